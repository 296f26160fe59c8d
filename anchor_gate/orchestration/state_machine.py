"""
Gating state machine for checkpoints.

A student's gating status is derived from attempt history alone; nothing is
cached. Status is always computed from the single most recent attempt (highest
attempt_number), so the ledger stays the only source of truth.
"""

import uuid
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_gate.engines.ledger.attempt_ledger import AttemptLedger
from anchor_gate.kernel.models.attempt import AttemptStatus, CheckpointAttempt
from anchor_gate.kernel.models.checkpoint import Checkpoint, CheckpointStatus, ContentType


class GatingStatus(str, Enum):
    """Derived progression state of a student at one checkpoint."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    RETRY_REQUIRED = "retry_required"


def derive_status(history: Sequence[CheckpointAttempt]) -> GatingStatus:
    """Pure function of the latest attempt in `history`."""
    if not history:
        return GatingStatus.PENDING
    latest = max(history, key=lambda a: a.attempt_number)
    status = AttemptStatus(latest.status)
    if status == AttemptStatus.IN_PROGRESS:
        return GatingStatus.IN_PROGRESS
    if status == AttemptStatus.COMPLETED:
        return GatingStatus.PASSED
    if status == AttemptStatus.FAILED:
        return GatingStatus.RETRY_REQUIRED
    raise ValueError(f"Unhandled attempt status: {status}")


class AttemptCapPolicy:
    """
    Extension point for limiting re-attempts after RETRY_REQUIRED.
    The default policy never locks a student out.
    """

    def allows_new_attempt(self, history: Sequence[CheckpointAttempt]) -> bool:
        return True


class MaxAttemptsPolicy(AttemptCapPolicy):
    """Cap the number of attempts per (student, checkpoint)."""

    def __init__(self, max_attempts: int):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts

    def allows_new_attempt(self, history: Sequence[CheckpointAttempt]) -> bool:
        return len(history) < self.max_attempts


def can_start(status: GatingStatus) -> bool:
    """Whether a new attempt may be started from this gating status."""
    return status in (GatingStatus.PENDING, GatingStatus.RETRY_REQUIRED)


class CheckpointGate(BaseModel):
    """Gating status of one checkpoint for one student."""

    checkpoint_id: uuid.UUID
    title: Optional[str] = None
    is_mandatory: bool = False
    status: GatingStatus
    attempts: int = 0
    latest_attempt_number: Optional[int] = None
    latest_score: Optional[float] = None


class UnitGatingStatus(BaseModel):
    """Aggregate over every active checkpoint attached to one piece of content."""

    content_type: ContentType
    content_reference: str
    is_complete: bool
    checkpoints: List[CheckpointGate]
    blocking_checkpoint_ids: List[uuid.UUID]


class GatingStateMachine:
    """Derives pass/block/pending status from ledger history."""

    def __init__(self, session: AsyncSession, cap_policy: Optional[AttemptCapPolicy] = None):
        self.session = session
        self.ledger = AttemptLedger(session)
        self.cap_policy = cap_policy or AttemptCapPolicy()

    async def status(self, student_id: uuid.UUID, checkpoint_id: uuid.UUID) -> GatingStatus:
        history = await self.ledger.history(student_id, checkpoint_id)
        return derive_status(history)

    async def gate(self, student_id: uuid.UUID, checkpoint: Checkpoint) -> CheckpointGate:
        history = await self.ledger.history(student_id, checkpoint.id)
        latest = history[-1] if history else None
        return CheckpointGate(
            checkpoint_id=checkpoint.id,
            title=checkpoint.title,
            is_mandatory=checkpoint.is_mandatory,
            status=derive_status(history),
            attempts=len(history),
            latest_attempt_number=latest.attempt_number if latest else None,
            latest_score=latest.score if latest else None,
        )

    async def may_start(self, student_id: uuid.UUID, checkpoint_id: uuid.UUID) -> bool:
        """Status allows a new attempt and the cap policy agrees."""
        history = await self.ledger.history(student_id, checkpoint_id)
        return can_start(derive_status(history)) and self.cap_policy.allows_new_attempt(history)

    async def unit_status(
        self,
        student_id: uuid.UUID,
        content_type: ContentType,
        content_reference: str,
    ) -> UnitGatingStatus:
        """
        A unit is complete when every mandatory checkpoint is PASSED.
        Optional checkpoints are reported but never block.
        """
        q = (
            select(Checkpoint)
            .where(
                Checkpoint.content_type == ContentType(content_type).value,
                Checkpoint.content_reference == content_reference,
                Checkpoint.status == CheckpointStatus.ACTIVE.value,
                Checkpoint.deleted_at.is_(None),
            )
            .order_by(Checkpoint.created_at, Checkpoint.title)
        )
        result = await self.session.execute(q)
        checkpoints = list(result.scalars().all())

        gates = [await self.gate(student_id, cp) for cp in checkpoints]
        blocking = [
            g.checkpoint_id for g in gates
            if g.is_mandatory and g.status != GatingStatus.PASSED
        ]
        return UnitGatingStatus(
            content_type=ContentType(content_type),
            content_reference=content_reference,
            is_complete=not blocking,
            checkpoints=gates,
            blocking_checkpoint_ids=blocking,
        )
