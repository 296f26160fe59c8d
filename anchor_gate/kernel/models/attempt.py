"""
Attempt models - one student's try at passing a checkpoint.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, JSON, String, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from anchor_gate.kernel.models.base import Base, SoftDeleteMixin, TimestampMixin, generate_uuid


class AttemptStatus(str, Enum):
    """Attempt lifecycle. Only IN_PROGRESS -> {COMPLETED, FAILED}; terminal states are final."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not AttemptStatus.IN_PROGRESS


# Valid transitions: from_status -> allowed target statuses
_TRANSITIONS: Dict[AttemptStatus, Set[AttemptStatus]] = {
    AttemptStatus.IN_PROGRESS: {AttemptStatus.COMPLETED, AttemptStatus.FAILED},
    AttemptStatus.COMPLETED: set(),
    AttemptStatus.FAILED: set(),
}


def can_transition(from_status: AttemptStatus, to_status: AttemptStatus) -> bool:
    """Check whether an attempt may move from_status -> to_status."""
    return to_status in _TRANSITIONS[AttemptStatus(from_status)]


_ONE_IN_PROGRESS_WHERE = "status = 'in_progress' AND deleted_at IS NULL"


class CheckpointAttempt(Base, TimestampMixin, SoftDeleteMixin):
    """
    Record of a single checkpoint attempt.

    (student_id, checkpoint_id, attempt_number) is unique across all rows, tombstoned
    ones included; it is the backstop for race-free attempt numbering. A partial
    unique index additionally allows one live IN_PROGRESS row per pair.
    """

    __tablename__ = "checkpoint_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)
    checkpoint_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("checkpoints.id", ondelete="RESTRICT"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[AttemptStatus] = mapped_column(
        String(32),
        nullable=False,
        default=AttemptStatus.IN_PROGRESS,
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    time_spent_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    is_correct: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Validated through schemas.attempt.AttemptMetadata before it is written
    interaction_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint(
            "student_id", "checkpoint_id", "attempt_number",
            name="uq_checkpoint_attempts_student_checkpoint_number",
        ),
        Index(
            "uq_checkpoint_attempts_one_in_progress",
            "student_id", "checkpoint_id",
            unique=True,
            sqlite_where=text(_ONE_IN_PROGRESS_WHERE),
            postgresql_where=text(_ONE_IN_PROGRESS_WHERE),
        ),
        Index("ix_checkpoint_attempts_student_checkpoint", "student_id", "checkpoint_id"),
        Index("ix_checkpoint_attempts_student_status", "student_id", "status"),
        Index("ix_checkpoint_attempts_checkpoint_status", "checkpoint_id", "status"),
        Index("ix_checkpoint_attempts_started_at", "started_at"),
        Index("ix_checkpoint_attempts_completed_at", "completed_at"),
        Index("ix_checkpoint_attempts_is_correct", "is_correct"),
    )

    @property
    def attempt_status(self) -> AttemptStatus:
        """Status as an enum member (SQLite returns the raw string)."""
        return AttemptStatus(self.status)
