"""
Attempt Ledger - single source of truth for attempt identity, sequencing and
state transitions (DB-backed).

Attempt numbers are allocated optimistically: read the current maximum, insert
max + 1, and let the unique index on (student_id, checkpoint_id, attempt_number)
reject a concurrent duplicate. A rejected insert rolls back, re-reads and retries
a bounded number of times. Contention is confined to one student's one checkpoint.

The ledger owns its transaction boundaries: every mutating call commits (or
rolls back) before returning.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_gate.config import get_settings
from anchor_gate.errors import (
    ATTEMPT_IN_PROGRESS_MESSAGE,
    ConflictError,
    InvalidStateError,
    NotFoundError,
)
from anchor_gate.kernel.models.attempt import AttemptStatus, CheckpointAttempt, can_transition
from anchor_gate.kernel.models.base import as_aware, utcnow
from anchor_gate.kernel.models.checkpoint import Checkpoint, CheckpointStatus
from anchor_gate.logging_config import get_logger
from anchor_gate.schemas.attempt import AttemptMetadata

logger = get_logger(__name__)


class AttemptLedger:
    """Durable, race-free attempt records per (student, checkpoint)."""

    def __init__(self, session: AsyncSession, max_retries: Optional[int] = None):
        self.session = session
        self.max_retries = max_retries if max_retries is not None else get_settings().ledger_max_retries

    # --- reads ---

    async def get_attempt(self, attempt_id: uuid.UUID, include_deleted: bool = False) -> CheckpointAttempt:
        q = select(CheckpointAttempt).where(CheckpointAttempt.id == attempt_id)
        if not include_deleted:
            q = q.where(CheckpointAttempt.deleted_at.is_(None))
        result = await self.session.execute(q.execution_options(populate_existing=True))
        attempt = result.scalar_one_or_none()
        if attempt is None:
            raise NotFoundError(f"Attempt {attempt_id} not found", code="attempt_not_found")
        return attempt

    async def history(
        self,
        student_id: uuid.UUID,
        checkpoint_id: uuid.UUID,
        include_deleted: bool = False,
    ) -> List[CheckpointAttempt]:
        """All attempts for the pair, ordered by attempt_number ascending."""
        q = select(CheckpointAttempt).where(
            CheckpointAttempt.student_id == student_id,
            CheckpointAttempt.checkpoint_id == checkpoint_id,
        )
        if not include_deleted:
            q = q.where(CheckpointAttempt.deleted_at.is_(None))
        q = q.order_by(CheckpointAttempt.attempt_number)
        result = await self.session.execute(q.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def latest_attempt(self, student_id: uuid.UUID, checkpoint_id: uuid.UUID) -> Optional[CheckpointAttempt]:
        q = (
            select(CheckpointAttempt)
            .where(
                CheckpointAttempt.student_id == student_id,
                CheckpointAttempt.checkpoint_id == checkpoint_id,
                CheckpointAttempt.deleted_at.is_(None),
            )
            .order_by(CheckpointAttempt.attempt_number.desc())
            .limit(1)
        )
        result = await self.session.execute(q.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def in_progress_attempt(self, student_id: uuid.UUID, checkpoint_id: uuid.UUID) -> Optional[CheckpointAttempt]:
        q = select(CheckpointAttempt).where(
            CheckpointAttempt.student_id == student_id,
            CheckpointAttempt.checkpoint_id == checkpoint_id,
            CheckpointAttempt.status == AttemptStatus.IN_PROGRESS.value,
            CheckpointAttempt.deleted_at.is_(None),
        )
        result = await self.session.execute(q.execution_options(populate_existing=True))
        return result.scalars().first()

    async def list_attempts(
        self,
        student_id: uuid.UUID,
        status: Optional[AttemptStatus] = None,
        checkpoint_id: Optional[uuid.UUID] = None,
    ) -> List[CheckpointAttempt]:
        """A student's attempts across checkpoints, newest first."""
        q = select(CheckpointAttempt).where(
            CheckpointAttempt.student_id == student_id,
            CheckpointAttempt.deleted_at.is_(None),
        )
        if status is not None:
            q = q.where(CheckpointAttempt.status == status.value)
        if checkpoint_id is not None:
            q = q.where(CheckpointAttempt.checkpoint_id == checkpoint_id)
        q = q.order_by(CheckpointAttempt.started_at.desc(), CheckpointAttempt.attempt_number.desc())
        result = await self.session.execute(q)
        return list(result.scalars().all())

    async def _max_attempt_number(self, student_id: uuid.UUID, checkpoint_id: uuid.UUID) -> int:
        # Tombstoned rows count: the unique index spans them
        q = select(func.max(CheckpointAttempt.attempt_number)).where(
            CheckpointAttempt.student_id == student_id,
            CheckpointAttempt.checkpoint_id == checkpoint_id,
        )
        result = await self.session.execute(q)
        return result.scalar_one_or_none() or 0

    async def _require_startable_checkpoint(self, checkpoint_id: uuid.UUID) -> Checkpoint:
        q = select(Checkpoint).where(
            Checkpoint.id == checkpoint_id,
            Checkpoint.status == CheckpointStatus.ACTIVE.value,
            Checkpoint.deleted_at.is_(None),
        )
        result = await self.session.execute(q)
        checkpoint = result.scalar_one_or_none()
        if checkpoint is None:
            raise NotFoundError(f"Checkpoint {checkpoint_id} not found", code="checkpoint_not_found")
        return checkpoint

    # --- transitions ---

    async def start_attempt(
        self,
        student_id: uuid.UUID,
        checkpoint_id: uuid.UUID,
        metadata: Optional[AttemptMetadata] = None,
    ) -> CheckpointAttempt:
        """
        Allocate attempt_number = max + 1 and insert an IN_PROGRESS attempt.

        Raises:
            NotFoundError: checkpoint missing or archived
            ConflictError: an IN_PROGRESS attempt exists, or allocation retries ran out
        """
        await self._require_startable_checkpoint(checkpoint_id)
        payload = (metadata or AttemptMetadata()).model_dump(mode="json")

        for retry in range(self.max_retries + 1):
            if await self.in_progress_attempt(student_id, checkpoint_id) is not None:
                raise ConflictError(ATTEMPT_IN_PROGRESS_MESSAGE, code="attempt_in_progress")

            attempt_number = await self._max_attempt_number(student_id, checkpoint_id) + 1
            attempt = CheckpointAttempt(
                student_id=student_id,
                checkpoint_id=checkpoint_id,
                attempt_number=attempt_number,
                status=AttemptStatus.IN_PROGRESS.value,
                started_at=utcnow(),
                interaction_metadata=payload,
            )
            self.session.add(attempt)
            try:
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                logger.info(
                    "Attempt number collision, re-reading",
                    extra={
                        "student_id": str(student_id),
                        "checkpoint_id": str(checkpoint_id),
                        "attempt_number": attempt_number,
                        "retry": retry,
                    },
                )
                continue

            logger.info(
                "Attempt started",
                extra={
                    "attempt_id": str(attempt.id),
                    "student_id": str(student_id),
                    "checkpoint_id": str(checkpoint_id),
                    "attempt_number": attempt_number,
                },
            )
            return attempt

        # Last look: a concurrent winner most likely holds the IN_PROGRESS slot
        if await self.in_progress_attempt(student_id, checkpoint_id) is not None:
            raise ConflictError(ATTEMPT_IN_PROGRESS_MESSAGE, code="attempt_in_progress")
        logger.warning(
            "Attempt allocation retries exhausted",
            extra={"student_id": str(student_id), "checkpoint_id": str(checkpoint_id)},
        )
        raise ConflictError(
            "Could not allocate a new attempt under contention; try again.",
            code="allocation_exhausted",
        )

    async def resume_attempt(self, attempt_id: uuid.UUID) -> CheckpointAttempt:
        """Return the IN_PROGRESS attempt unchanged."""
        attempt = await self.get_attempt(attempt_id)
        if attempt.attempt_status.is_terminal:
            raise NotFoundError(f"No in-progress attempt {attempt_id}", code="attempt_not_found")
        return attempt

    async def complete_attempt(
        self,
        attempt_id: uuid.UUID,
        is_correct: bool,
        score: float,
        metadata: Optional[AttemptMetadata] = None,
    ) -> CheckpointAttempt:
        """IN_PROGRESS -> COMPLETED when is_correct, else FAILED."""
        status = AttemptStatus.COMPLETED if is_correct else AttemptStatus.FAILED
        attempt = await self._close(attempt_id, status, bool(is_correct), float(score), metadata)
        logger.info(
            "Attempt closed",
            extra={
                "attempt_id": str(attempt_id),
                "status": status.value,
                "score": float(score),
            },
        )
        return attempt

    async def abandon_attempt(self, attempt_id: uuid.UUID) -> CheckpointAttempt:
        """Mark an IN_PROGRESS attempt FAILED, e.g. when its session timed out."""
        metadata = await self._current_metadata(attempt_id)
        metadata.close_reason = "abandoned"
        closed = await self._close(attempt_id, AttemptStatus.FAILED, False, 0.0, metadata)
        logger.info("Attempt abandoned", extra={"attempt_id": str(attempt_id)})
        return closed

    async def abandon_stale_attempts(self, older_than: datetime) -> int:
        """Abandon every IN_PROGRESS attempt started before `older_than`. Returns the count."""
        q = select(CheckpointAttempt.id).where(
            CheckpointAttempt.status == AttemptStatus.IN_PROGRESS.value,
            CheckpointAttempt.deleted_at.is_(None),
            CheckpointAttempt.started_at < older_than,
        )
        result = await self.session.execute(q)
        stale_ids = list(result.scalars().all())

        abandoned = 0
        for attempt_id in stale_ids:
            try:
                await self.abandon_attempt(attempt_id)
                abandoned += 1
            except InvalidStateError:
                # Closed by its owner between the scan and the update
                continue
        if stale_ids:
            logger.info("Stale attempts swept", extra={"found": len(stale_ids), "abandoned": abandoned})
        return abandoned

    async def soft_delete_attempt(self, attempt_id: uuid.UUID) -> CheckpointAttempt:
        """Tombstone an attempt. Its attempt_number stays reserved."""
        attempt = await self.get_attempt(attempt_id)
        attempt.deleted_at = utcnow()
        await self.session.commit()
        logger.info("Attempt soft-deleted", extra={"attempt_id": str(attempt_id)})
        return attempt

    async def _current_metadata(self, attempt_id: uuid.UUID) -> AttemptMetadata:
        try:
            attempt = await self.get_attempt(attempt_id)
        except NotFoundError:
            raise InvalidStateError(f"Attempt {attempt_id} does not exist", code="attempt_not_found")
        return AttemptMetadata.model_validate(attempt.interaction_metadata or {})

    async def _close(
        self,
        attempt_id: uuid.UUID,
        status: AttemptStatus,
        is_correct: bool,
        score: float,
        metadata: Optional[AttemptMetadata],
    ) -> CheckpointAttempt:
        """Atomic conditional update guarded by status = IN_PROGRESS."""
        try:
            attempt = await self.get_attempt(attempt_id)
        except NotFoundError:
            raise InvalidStateError(f"Attempt {attempt_id} does not exist", code="attempt_not_found")
        if not can_transition(attempt.attempt_status, status):
            raise InvalidStateError(
                f"Attempt {attempt_id} is already {attempt.attempt_status.value}",
                code="attempt_terminal",
            )

        now = utcnow()
        values = {
            "status": status.value,
            "is_correct": is_correct,
            "score": score,
            "completed_at": now,
            "time_spent_seconds": max(0, int((now - as_aware(attempt.started_at)).total_seconds())),
        }
        if metadata is not None:
            values["interaction_metadata"] = metadata.model_dump(mode="json")

        stmt = (
            update(CheckpointAttempt)
            .where(
                CheckpointAttempt.id == attempt_id,
                CheckpointAttempt.status == AttemptStatus.IN_PROGRESS.value,
                CheckpointAttempt.deleted_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            await self.session.rollback()
            raise InvalidStateError(f"Attempt {attempt_id} was closed concurrently", code="attempt_terminal")
        await self.session.commit()
        await self.session.refresh(attempt)
        return attempt
