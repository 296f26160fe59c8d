"""
Pydantic schemas for the gating core's inputs and outputs.
"""

from anchor_gate.schemas.attempt import (
    AttemptMetadata,
    AttemptRead,
    SubmittedAnswer,
    VerificationSummary,
)
from anchor_gate.schemas.checkpoint import (
    CheckpointCreate,
    CheckpointFilter,
    CheckpointRead,
    CheckpointUpdate,
    QuizGroupCreate,
    QuizQuestionCreate,
)
from anchor_gate.schemas.verification import (
    ModuleContext,
    QuestionSubmission,
    QuestionVerificationResult,
    VerificationRequest,
    VerificationResponse,
)

__all__ = [
    # Attempts
    "AttemptMetadata",
    "AttemptRead",
    "SubmittedAnswer",
    "VerificationSummary",
    # Checkpoints
    "CheckpointCreate",
    "CheckpointFilter",
    "CheckpointRead",
    "CheckpointUpdate",
    "QuizGroupCreate",
    "QuizQuestionCreate",
    # Verification
    "ModuleContext",
    "QuestionSubmission",
    "QuestionVerificationResult",
    "VerificationRequest",
    "VerificationResponse",
]
