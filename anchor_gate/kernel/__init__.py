"""
Stable Kernel Layer

Persistence foundation for the gating core:
- Checkpoint registry rows (soft-deleted, never hard-deleted while referenced)
- Attempt ledger rows (unique attempt numbering per student and checkpoint)

Invariants:
- Terminal attempts are immutable except for the tombstone
- All read paths filter tombstoned rows unless history is explicitly requested
"""

from anchor_gate.kernel.models import (
    AttemptStatus,
    Checkpoint,
    CheckpointAttempt,
    CheckpointStatus,
    ContentType,
    QuestionType,
    QuizGroup,
    QuizQuestion,
)

__all__ = [
    "AttemptStatus",
    "Checkpoint",
    "CheckpointAttempt",
    "CheckpointStatus",
    "ContentType",
    "QuestionType",
    "QuizGroup",
    "QuizQuestion",
]
