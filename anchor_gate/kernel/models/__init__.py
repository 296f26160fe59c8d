"""
Kernel Data Models

Core SQLAlchemy models: checkpoints (anchor tags), their quiz groups and
questions, and the attempt ledger rows.
"""

from anchor_gate.kernel.models.base import Base, TimestampMixin, SoftDeleteMixin, generate_uuid, utcnow, as_aware
from anchor_gate.kernel.models.checkpoint import (
    Checkpoint,
    CheckpointStatus,
    ContentType,
    QuestionType,
    QuizGroup,
    QuizQuestion,
)
from anchor_gate.kernel.models.attempt import AttemptStatus, CheckpointAttempt

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "SoftDeleteMixin",
    "generate_uuid",
    "utcnow",
    "as_aware",
    # Checkpoints
    "Checkpoint",
    "CheckpointStatus",
    "ContentType",
    "QuestionType",
    "QuizGroup",
    "QuizQuestion",
    # Attempts
    "AttemptStatus",
    "CheckpointAttempt",
]
