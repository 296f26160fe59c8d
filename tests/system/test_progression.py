"""
System tests for the progression flow: begin, submit, sweep and unit gating,
with the knowledge source replaced by an in-memory double.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from anchor_gate.engines.checkpoints.checkpoint_service import CheckpointService
from anchor_gate.engines.ledger.attempt_ledger import AttemptLedger
from anchor_gate.engines.verification.knowledge_lookup import KnowledgeLookup, KnowledgeVerdict
from anchor_gate.engines.verification.quiz_verifier import QuizVerifier
from anchor_gate.errors import InvalidStateError, NotFoundError, ValidationError
from anchor_gate.kernel.models.attempt import AttemptStatus, CheckpointAttempt
from anchor_gate.kernel.models.base import utcnow
from anchor_gate.kernel.models.checkpoint import ContentType
from anchor_gate.orchestration.progression import ProgressionService
from anchor_gate.orchestration.state_machine import GatingStateMachine, GatingStatus, MaxAttemptsPolicy
from anchor_gate.schemas.attempt import AttemptMetadata, SubmittedAnswer

RIGHT = ["Network", "True", "SCTP, TCP", "It prevents congestive collapse."]


class StaticLookup(KnowledgeLookup):
    def __init__(self, available: bool = True):
        self.available = available

    async def has_knowledge(self, context):
        return self.available

    async def verify(self, context, question, answer):
        return KnowledgeVerdict(is_correct="collapse" in answer, score=1.0 if "collapse" in answer else 0.0)

    async def summarize(self, context, results):
        return None


def _service(session, available: bool = True, **kwargs) -> ProgressionService:
    verifier = QuizVerifier(StaticLookup(available), question_timeout=1.0, max_concurrency=2, batch_deadline=5.0)
    return ProgressionService(session, verifier=verifier, **kwargs)


async def _answers(session, quiz_group_id, values):
    questions = await CheckpointService(session).get_quiz_questions(quiz_group_id)
    return [SubmittedAnswer(question_id=q.id, answer=v) for q, v in zip(questions, values)]


class TestBegin:
    @pytest.mark.asyncio
    async def test_begin_starts_then_resumes(self, db_session, checkpoint, student_id):
        service = _service(db_session)
        first = await service.begin(student_id, checkpoint.id, client="web")
        assert first.resumed is False
        assert first.status == GatingStatus.IN_PROGRESS
        assert first.attempt.attempt_number == 1

        again = await service.begin(student_id, checkpoint.id)
        assert again.resumed is True
        assert again.attempt.id == first.attempt.id

        stored = await AttemptLedger(db_session).get_attempt(first.attempt.id)
        assert AttemptMetadata.model_validate(stored.interaction_metadata).client == "web"

    @pytest.mark.asyncio
    async def test_begin_unknown_checkpoint(self, db_session, student_id):
        with pytest.raises(NotFoundError):
            await _service(db_session).begin(student_id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_open_attempt_survives_archiving(self, db_session, checkpoint, quiz_group, student_id):
        service = _service(db_session)
        first = await service.begin(student_id, checkpoint.id)
        await CheckpointService(db_session).archive_checkpoint(checkpoint.id)

        again = await service.begin(student_id, checkpoint.id)
        assert again.resumed is True
        assert again.attempt.id == first.attempt.id

        outcome = await service.submit(student_id, checkpoint.id, await _answers(db_session, quiz_group.id, RIGHT))
        assert outcome.passed is True

    @pytest.mark.asyncio
    async def test_archived_checkpoint_cannot_be_started(self, db_session, checkpoint, student_id):
        checkpoint_id = checkpoint.id
        await CheckpointService(db_session).archive_checkpoint(checkpoint_id)
        with pytest.raises(NotFoundError):
            await _service(db_session).begin(student_id, checkpoint_id)

    @pytest.mark.asyncio
    async def test_concurrent_begin_shares_one_attempt(self, session_maker, checkpoint, student_id):
        checkpoint_id = checkpoint.id
        async with session_maker() as s1, session_maker() as s2:
            a, b = await asyncio.gather(
                _service(s1).begin(student_id, checkpoint_id),
                _service(s2).begin(student_id, checkpoint_id),
            )
        assert a.attempt.id == b.attempt.id
        assert {a.resumed, b.resumed} == {False, True}


class TestSubmit:
    @pytest.mark.asyncio
    async def test_all_correct_passes(self, db_session, checkpoint, quiz_group, student_id):
        service = _service(db_session)
        await service.begin(student_id, checkpoint.id)

        outcome = await service.submit(student_id, checkpoint.id, await _answers(db_session, quiz_group.id, RIGHT))
        assert outcome.passed is True
        assert outcome.status == GatingStatus.PASSED
        assert outcome.verification.score_percentage == 100
        assert outcome.attempt.status == AttemptStatus.COMPLETED
        assert outcome.attempt.score == 100

        stored = await AttemptLedger(db_session).get_attempt(outcome.attempt.id)
        metadata = AttemptMetadata.model_validate(stored.interaction_metadata)
        assert metadata.close_reason == "submitted"
        assert metadata.verification.correct_answers == 4
        assert [a.answer for a in metadata.submitted_answers] == RIGHT
        assert metadata.verification_degraded is False

    @pytest.mark.asyncio
    async def test_below_threshold_requires_retry(self, db_session, checkpoint, quiz_group, student_id):
        service = _service(db_session)
        await service.begin(student_id, checkpoint.id)
        answers = await _answers(db_session, quiz_group.id, ["Physical"] + RIGHT[1:])

        outcome = await service.submit(student_id, checkpoint.id, answers, max_results=2)
        assert outcome.verification.score_percentage == 75
        assert len(outcome.verification.questions_results) == 2
        assert outcome.passed is False
        assert outcome.status == GatingStatus.RETRY_REQUIRED
        assert outcome.attempt.status == AttemptStatus.FAILED

        retry = await service.begin(student_id, checkpoint.id)
        assert retry.resumed is False
        assert retry.attempt.attempt_number == 2

    @pytest.mark.asyncio
    async def test_passed_checkpoint_cannot_be_restarted(self, db_session, checkpoint, quiz_group, student_id):
        service = _service(db_session)
        await service.begin(student_id, checkpoint.id)
        await service.submit(student_id, checkpoint.id, await _answers(db_session, quiz_group.id, RIGHT))
        with pytest.raises(InvalidStateError) as exc:
            await service.begin(student_id, checkpoint.id)
        assert exc.value.code == "already_passed"

    @pytest.mark.asyncio
    async def test_submit_without_attempt(self, db_session, checkpoint, quiz_group, student_id):
        with pytest.raises(NotFoundError):
            await _service(db_session).submit(
                student_id, checkpoint.id, await _answers(db_session, quiz_group.id, RIGHT)
            )

    @pytest.mark.asyncio
    async def test_unanswered_question_keeps_attempt_open(self, db_session, checkpoint, quiz_group, student_id):
        service = _service(db_session)
        await service.begin(student_id, checkpoint.id)
        with pytest.raises(ValidationError):
            await service.submit(student_id, checkpoint.id, await _answers(db_session, quiz_group.id, RIGHT[:3]))
        assert await service.gating.status(student_id, checkpoint.id) == GatingStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_unknown_question_rejected(self, db_session, checkpoint, quiz_group, student_id):
        service = _service(db_session)
        await service.begin(student_id, checkpoint.id)
        answers = await _answers(db_session, quiz_group.id, RIGHT)
        answers.append(SubmittedAnswer(question_id=uuid.uuid4(), answer="?"))
        with pytest.raises(ValidationError):
            await service.submit(student_id, checkpoint.id, answers)

    @pytest.mark.asyncio
    async def test_degraded_verification_is_recorded(self, db_session, checkpoint, quiz_group, student_id):
        service = _service(db_session, available=False)
        await service.begin(student_id, checkpoint.id)
        outcome = await service.submit(student_id, checkpoint.id, await _answers(db_session, quiz_group.id, RIGHT))

        assert outcome.verification.knowledge_available is False
        assert outcome.verification.score_percentage == 0
        assert outcome.status == GatingStatus.RETRY_REQUIRED
        stored = await AttemptLedger(db_session).get_attempt(outcome.attempt.id)
        assert AttemptMetadata.model_validate(stored.interaction_metadata).verification_degraded is True


class TestPolicies:
    @pytest.mark.asyncio
    async def test_attempt_cap(self, db_session, checkpoint, quiz_group, student_id):
        service = _service(db_session, cap_policy=MaxAttemptsPolicy(1))
        await service.begin(student_id, checkpoint.id)
        await service.submit(student_id, checkpoint.id, await _answers(db_session, quiz_group.id, ["Physical"] + RIGHT[1:]))
        with pytest.raises(InvalidStateError) as exc:
            await service.begin(student_id, checkpoint.id)
        assert exc.value.code == "attempt_limit"

    @pytest.mark.asyncio
    async def test_sweep_stale_attempts(self, db_session, checkpoint, student_id):
        service = _service(db_session, attempt_timeout_minutes=30)
        opened = await service.begin(student_id, checkpoint.id)
        await db_session.execute(
            update(CheckpointAttempt)
            .where(CheckpointAttempt.id == opened.attempt.id)
            .values(started_at=utcnow() - timedelta(minutes=45))
        )
        await db_session.commit()

        assert await service.sweep_stale_attempts() == 1
        assert await service.gating.status(student_id, checkpoint.id) == GatingStatus.RETRY_REQUIRED


class TestUnitStatus:
    @pytest.mark.asyncio
    async def test_only_mandatory_checkpoints_block(
        self, db_session, checkpoint, checkpoint_factory, quiz_group, student_id
    ):
        optional = await checkpoint_factory(title="Optional recap", is_mandatory=False)
        gating = GatingStateMachine(db_session)

        before = await gating.unit_status(student_id, ContentType.CHAPTER, "chapter-1")
        assert before.is_complete is False
        assert before.blocking_checkpoint_ids == [checkpoint.id]
        assert len(before.checkpoints) == 2

        service = _service(db_session)
        await service.begin(student_id, checkpoint.id)
        await service.submit(student_id, checkpoint.id, await _answers(db_session, quiz_group.id, RIGHT))

        after = await gating.unit_status(student_id, ContentType.CHAPTER, "chapter-1")
        assert after.is_complete is True
        assert after.blocking_checkpoint_ids == []
        statuses = {g.checkpoint_id: g.status for g in after.checkpoints}
        assert statuses[optional.id] == GatingStatus.PENDING
        assert statuses[checkpoint.id] == GatingStatus.PASSED
