"""
Progression flow - the student-side path through a checkpoint.

begin() resumes or starts an attempt, submit() scores the quiz and closes the
attempt through the ledger, and the gating status is re-derived after each
step. The ledger stays the only writer of attempt rows.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_gate.config import get_settings
from anchor_gate.engines.checkpoints.checkpoint_service import CheckpointService
from anchor_gate.engines.ledger.attempt_ledger import AttemptLedger
from anchor_gate.engines.verification.knowledge_lookup import HttpKnowledgeLookup
from anchor_gate.engines.verification.quiz_verifier import QuizVerifier
from anchor_gate.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from anchor_gate.kernel.models.attempt import CheckpointAttempt
from anchor_gate.kernel.models.base import utcnow
from anchor_gate.kernel.models.checkpoint import QuestionType
from anchor_gate.logging_config import correlation_scope, get_logger
from anchor_gate.orchestration.state_machine import (
    AttemptCapPolicy,
    GatingStateMachine,
    GatingStatus,
    derive_status,
)
from anchor_gate.schemas.attempt import AttemptMetadata, AttemptRead, SubmittedAnswer, VerificationSummary
from anchor_gate.schemas.verification import QuestionSubmission, VerificationRequest, VerificationResponse

logger = get_logger(__name__)


class AttemptSession(BaseModel):
    """Outcome of begin(): the open attempt and the derived status."""

    attempt: AttemptRead
    status: GatingStatus
    resumed: bool


class SubmissionOutcome(BaseModel):
    """Outcome of submit(): the closed attempt, its scoring and the new status."""

    attempt: AttemptRead
    verification: VerificationResponse
    status: GatingStatus
    passed: bool


class ProgressionService:
    """Wires the ledger, the gating state machine and the quiz verifier together."""

    def __init__(
        self,
        session: AsyncSession,
        verifier: Optional[QuizVerifier] = None,
        cap_policy: Optional[AttemptCapPolicy] = None,
        pass_percentage: Optional[int] = None,
        attempt_timeout_minutes: Optional[int] = None,
    ):
        settings = get_settings()
        self.session = session
        self.ledger = AttemptLedger(session)
        self.gating = GatingStateMachine(session, cap_policy=cap_policy)
        self.checkpoints = CheckpointService(session)
        self.verifier = verifier or QuizVerifier(HttpKnowledgeLookup())
        self.pass_percentage = (
            pass_percentage if pass_percentage is not None else settings.checkpoint_pass_percentage
        )
        self.attempt_timeout_minutes = (
            attempt_timeout_minutes if attempt_timeout_minutes is not None else settings.attempt_timeout_minutes
        )

    async def begin(
        self,
        student_id: uuid.UUID,
        checkpoint_id: uuid.UUID,
        client: Optional[str] = None,
    ) -> AttemptSession:
        """
        Resume the open attempt, or start a new one. An attempt opened before
        the checkpoint was archived can still be resumed and submitted.

        Raises:
            NotFoundError: checkpoint missing, or archived with nothing to resume
            InvalidStateError: checkpoint already passed, or the cap policy refuses
        """
        with correlation_scope():
            checkpoint = await self.checkpoints.get_checkpoint(checkpoint_id, include_deleted=True)

            existing = await self.ledger.in_progress_attempt(student_id, checkpoint_id)
            if existing is not None:
                return self._resumed(existing)

            if not checkpoint.is_active:
                raise NotFoundError(f"Checkpoint {checkpoint_id} not found", code="checkpoint_not_found")

            history = await self.ledger.history(student_id, checkpoint_id)
            status = derive_status(history)
            if status == GatingStatus.PASSED:
                raise InvalidStateError("Checkpoint already passed", code="already_passed")
            if not await self.gating.may_start(student_id, checkpoint_id):
                raise InvalidStateError("No further attempts are allowed for this checkpoint", code="attempt_limit")

            try:
                attempt = await self.ledger.start_attempt(
                    student_id, checkpoint_id, metadata=AttemptMetadata(client=client)
                )
            except ConflictError:
                # A concurrent begin() won the slot; hand back its attempt
                existing = await self.ledger.in_progress_attempt(student_id, checkpoint_id)
                if existing is None:
                    raise
                return self._resumed(existing)

            return AttemptSession(
                attempt=AttemptRead.model_validate(attempt),
                status=GatingStatus.IN_PROGRESS,
                resumed=False,
            )

    async def submit(
        self,
        student_id: uuid.UUID,
        checkpoint_id: uuid.UUID,
        answers: List[SubmittedAnswer],
        max_results: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SubmissionOutcome:
        """
        Score the open attempt and close it.

        Raises:
            NotFoundError: no IN_PROGRESS attempt, or the quiz group is gone
            ValidationError: checkpoint has no quiz, an answer targets an unknown
                question, or a question is left unanswered
        """
        with correlation_scope():
            attempt = await self.ledger.in_progress_attempt(student_id, checkpoint_id)
            if attempt is None:
                raise NotFoundError("No attempt in progress for this checkpoint", code="no_attempt_in_progress")

            checkpoint = await self.checkpoints.get_checkpoint(checkpoint_id, include_deleted=True)
            if checkpoint.quiz_group_id is None:
                raise ValidationError("Checkpoint has no quiz attached", code="no_quiz")
            group = await self.checkpoints.get_quiz_group(checkpoint.quiz_group_id)
            questions = await self.checkpoints.get_quiz_questions(group.id)

            by_question: Dict[uuid.UUID, Optional[str]] = {a.question_id: a.answer for a in answers}
            unknown = set(by_question) - {q.id for q in questions}
            if unknown:
                raise ValidationError(
                    f"Answers reference unknown questions: {sorted(str(u) for u in unknown)}",
                    code="unknown_question",
                )

            request = VerificationRequest(
                module_title=group.module_title,
                module_description=group.module_description or "",
                max_results=max_results,
                questions=[
                    QuestionSubmission(
                        question=q.question,
                        question_type=QuestionType(q.question_type),
                        options=q.options,
                        user_answer=by_question.get(q.id),
                        correct_answer=q.correct_answer,
                        explanation=q.explanation,
                    )
                    for q in questions
                ],
            )
            response = await self.verifier.verify(request, require_questions=True, cancel_event=cancel_event)

            passed = response.score_percentage >= self.pass_percentage
            metadata = AttemptMetadata.model_validate(attempt.interaction_metadata or {})
            metadata.submitted_answers = [
                SubmittedAnswer(question_id=q.id, answer=by_question.get(q.id)) for q in questions
            ]
            metadata.verification = VerificationSummary(
                total_questions=response.total_questions,
                correct_answers=response.correct_answers,
                score_percentage=response.score_percentage,
                knowledge_available=response.knowledge_available,
                overall_feedback=response.overall_feedback,
            )
            metadata.verification_degraded = not response.knowledge_available
            metadata.close_reason = "submitted"

            closed = await self.ledger.complete_attempt(
                attempt.id,
                is_correct=passed,
                score=response.score_percentage,
                metadata=metadata,
            )
            status = await self.gating.status(student_id, checkpoint_id)

            logger.info(
                "Checkpoint submission scored",
                extra={
                    "attempt_id": str(closed.id),
                    "checkpoint_id": str(checkpoint_id),
                    "score_percentage": response.score_percentage,
                    "passed": passed,
                    "degraded": metadata.verification_degraded,
                },
            )
            return SubmissionOutcome(
                attempt=AttemptRead.model_validate(closed),
                verification=response,
                status=status,
                passed=passed,
            )

    async def sweep_stale_attempts(self, now: Optional[datetime] = None) -> int:
        """Abandon attempts left IN_PROGRESS longer than the configured timeout."""
        with correlation_scope():
            cutoff = (now or utcnow()) - timedelta(minutes=self.attempt_timeout_minutes)
            return await self.ledger.abandon_stale_attempts(cutoff)

    @staticmethod
    def _resumed(attempt: CheckpointAttempt) -> AttemptSession:
        logger.info("Attempt resumed", extra={"attempt_id": str(attempt.id)})
        return AttemptSession(
            attempt=AttemptRead.model_validate(attempt),
            status=GatingStatus.IN_PROGRESS,
            resumed=True,
        )
