"""
Attempt Analytics - read-only summaries over the attempt ledger.

Tombstoned attempts are excluded everywhere. Archived checkpoints still count:
their history is kept.
"""

import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_gate.errors import NotFoundError
from anchor_gate.kernel.models.attempt import AttemptStatus, CheckpointAttempt
from anchor_gate.kernel.models.checkpoint import Checkpoint
from anchor_gate.orchestration.state_machine import GatingStatus, derive_status


class StudentCheckpointRow(BaseModel):
    """One checkpoint as seen from one student's history."""

    checkpoint_id: uuid.UUID
    title: str
    attempts: int
    best_score: Optional[float] = None
    latest_status: GatingStatus
    last_attempt_at: Optional[datetime] = None


class StudentSummary(BaseModel):
    student_id: uuid.UUID
    checkpoints_attempted: int = 0
    checkpoints_passed: int = 0
    total_attempts: int = 0
    average_score: Optional[float] = None
    checkpoints: List[StudentCheckpointRow] = []


class CheckpointSummary(BaseModel):
    checkpoint_id: uuid.UUID
    title: str
    distinct_students: int = 0
    total_attempts: int = 0
    completed_attempts: int = 0
    pass_rate: Optional[float] = None
    average_score: Optional[float] = None
    average_attempts_to_pass: Optional[float] = None


def _mean(values: List[float]) -> Optional[float]:
    return round(sum(values) / len(values), 2) if values else None


def _is_terminal(attempt: CheckpointAttempt) -> bool:
    return AttemptStatus(attempt.status).is_terminal


class AttemptAnalytics:
    """Per-student and per-checkpoint summaries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def student_summary(
        self,
        student_id: uuid.UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> StudentSummary:
        """
        Summarize a student's attempts, optionally limited to those started in
        [date_from, date_to]. Per-checkpoint status is derived from the attempts
        inside the window.
        """
        q = (
            select(CheckpointAttempt, Checkpoint.title)
            .join(Checkpoint, Checkpoint.id == CheckpointAttempt.checkpoint_id)
            .where(
                CheckpointAttempt.student_id == student_id,
                CheckpointAttempt.deleted_at.is_(None),
            )
        )
        if date_from is not None:
            q = q.where(CheckpointAttempt.started_at >= date_from)
        if date_to is not None:
            q = q.where(CheckpointAttempt.started_at <= date_to)
        q = q.order_by(CheckpointAttempt.checkpoint_id, CheckpointAttempt.attempt_number)

        result = await self.session.execute(q)
        by_checkpoint: Dict[uuid.UUID, List[CheckpointAttempt]] = defaultdict(list)
        titles: Dict[uuid.UUID, str] = {}
        for attempt, title in result.all():
            by_checkpoint[attempt.checkpoint_id].append(attempt)
            titles[attempt.checkpoint_id] = title

        rows = []
        terminal_scores: List[float] = []
        for checkpoint_id, attempts in by_checkpoint.items():
            scores = [a.score for a in attempts if _is_terminal(a) and a.score is not None]
            terminal_scores.extend(scores)
            rows.append(
                StudentCheckpointRow(
                    checkpoint_id=checkpoint_id,
                    title=titles[checkpoint_id],
                    attempts=len(attempts),
                    best_score=max(scores) if scores else None,
                    latest_status=derive_status(attempts),
                    last_attempt_at=max(a.started_at for a in attempts),
                )
            )
        rows.sort(key=lambda r: r.last_attempt_at, reverse=True)

        return StudentSummary(
            student_id=student_id,
            checkpoints_attempted=len(rows),
            checkpoints_passed=sum(1 for r in rows if r.latest_status == GatingStatus.PASSED),
            total_attempts=sum(r.attempts for r in rows),
            average_score=_mean(terminal_scores),
            checkpoints=rows,
        )

    async def checkpoint_summary(self, checkpoint_id: uuid.UUID) -> CheckpointSummary:
        """
        Aggregate over every student's attempts at one checkpoint.

        pass_rate is passed / terminal attempts. average_attempts_to_pass counts,
        for each student who passed, the attempts up to and including the first pass.
        """
        result = await self.session.execute(select(Checkpoint).where(Checkpoint.id == checkpoint_id))
        checkpoint = result.scalar_one_or_none()
        if checkpoint is None:
            raise NotFoundError(f"Checkpoint {checkpoint_id} not found", code="checkpoint_not_found")

        result = await self.session.execute(
            select(CheckpointAttempt)
            .where(
                CheckpointAttempt.checkpoint_id == checkpoint_id,
                CheckpointAttempt.deleted_at.is_(None),
            )
            .order_by(CheckpointAttempt.student_id, CheckpointAttempt.attempt_number)
        )
        attempts = list(result.scalars().all())

        by_student: Dict[uuid.UUID, List[CheckpointAttempt]] = defaultdict(list)
        for a in attempts:
            by_student[a.student_id].append(a)

        terminal = [a for a in attempts if _is_terminal(a)]
        passed = [a for a in terminal if a.is_correct]
        attempts_to_pass: List[float] = []
        for history in by_student.values():
            for position, a in enumerate(history, start=1):
                if _is_terminal(a) and a.is_correct:
                    attempts_to_pass.append(float(position))
                    break

        return CheckpointSummary(
            checkpoint_id=checkpoint.id,
            title=checkpoint.title,
            distinct_students=len(by_student),
            total_attempts=len(attempts),
            completed_attempts=len(terminal),
            pass_rate=round(len(passed) / len(terminal), 4) if terminal else None,
            average_score=_mean([a.score for a in terminal if a.score is not None]),
            average_attempts_to_pass=_mean(attempts_to_pass),
        )
