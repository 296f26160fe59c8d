"""Unit tests for the HTTP knowledge lookup (httpx mock transport)."""

import json

import httpx
import pytest

from anchor_gate.config import get_settings
from anchor_gate.engines.verification import knowledge_lookup
from anchor_gate.engines.verification.knowledge_lookup import (
    HttpKnowledgeLookup,
    KnowledgeVerdict,
    format_module_context,
)
from anchor_gate.engines.verification.quiz_verifier import UNAVAILABLE_FEEDBACK, QuizVerifier
from anchor_gate.kernel.models.checkpoint import QuestionType
from anchor_gate.schemas.verification import ModuleContext, QuestionSubmission, VerificationRequest

DEFAULT_BACKOFF = knowledge_lookup.RETRY_BACKOFF

CONTEXT = ModuleContext(title="Computer Networks", description="Layers and protocols.")
QUESTION = QuestionSubmission(
    question="Explain why congestion control matters.",
    question_type=QuestionType.OPEN_ENDED,
    user_answer="It keeps the network from collapsing.",
    correct_answer="secret reference",
)


def _quiz_reply(is_correct=True, score_percentage=90, knowledge_available=True, **item) -> httpx.Response:
    result = {
        "question_index": 0,
        "question": QUESTION.question,
        "question_type": "open_ended",
        "user_answer": "answer",
        "is_correct": is_correct,
        "correct_answer": "",
        "explanation": "Matches the module.",
        "feedback": "Good reasoning.",
        "score": 1,
    }
    result.update(item)
    return httpx.Response(
        200,
        json={
            "total_questions": 1,
            "correct_answers": 1 if is_correct else 0,
            "score_percentage": score_percentage,
            "overall_feedback": "Nice.",
            "knowledge_available": knowledge_available,
            "questions_results": [result],
        },
    )


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(knowledge_lookup, "RETRY_BACKOFF", (0.0, 0.0, 0.0))


def _lookup(handler, max_retries: int = 2) -> HttpKnowledgeLookup:
    return HttpKnowledgeLookup(
        base_url="http://qa.test",
        timeout=1.0,
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


class TestHttpKnowledgeLookup:
    @pytest.mark.asyncio
    async def test_verify_posts_single_question_batch(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return _quiz_reply(is_correct=True, score_percentage=90)

        verdict = await _lookup(handler).verify(CONTEXT, QUESTION, "It keeps the network from collapsing.")
        assert isinstance(verdict, KnowledgeVerdict)
        assert verdict.is_correct is True
        assert verdict.score == pytest.approx(0.9)
        assert verdict.explanation == "Matches the module."
        assert verdict.feedback == "Good reasoning."

        body = seen["body"]
        assert seen["path"] == "/chat/qa/validate-quiz"
        assert body["module_title"] == "Computer Networks"
        assert body["module_description"] == "Layers and protocols."
        assert body["max_results"] == 1
        assert body["questions"] == [
            {
                "question": QUESTION.question,
                "question_type": "open_ended",
                "user_answer": "It keeps the network from collapsing.",
            }
        ]
        assert "1. Explain why congestion control matters." in body["module_context"]
        assert "secret reference" not in json.dumps(body)

    @pytest.mark.asyncio
    async def test_score_falls_back_to_question_score(self):
        def handler(request: httpx.Request) -> httpx.Response:
            reply = _quiz_reply(is_correct=False, score=0.25)
            data = json.loads(reply.content)
            del data["score_percentage"]
            return httpx.Response(200, json=data)

        verdict = await _lookup(handler).verify(CONTEXT, QUESTION, "answer")
        assert verdict is not None
        assert verdict.is_correct is False
        assert verdict.score == pytest.approx(0.25)

    @pytest.mark.asyncio
    async def test_no_reference_knowledge_means_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return _quiz_reply(is_correct=False, score_percentage=0, knowledge_available=False)

        assert await _lookup(handler).verify(CONTEXT, QUESTION, "answer") is None

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return _quiz_reply(is_correct=False, score_percentage=10)

        verdict = await _lookup(handler).verify(CONTEXT, QUESTION, "answer")
        assert len(calls) == 3
        assert verdict is not None and verdict.is_correct is False

    @pytest.mark.asyncio
    async def test_retries_request_timeouts(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("read timed out", request=request)
            return _quiz_reply()

        verdict = await _lookup(handler).verify(CONTEXT, QUESTION, "answer")
        assert len(calls) == 2
        assert verdict is not None and verdict.is_correct is True

    @pytest.mark.asyncio
    async def test_persistent_server_error_returns_none(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        assert await _lookup(handler, max_retries=2).verify(CONTEXT, QUESTION, "answer") is None
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        assert await _lookup(handler).verify(CONTEXT, QUESTION, "answer") is None
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connection_error_returns_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        assert await _lookup(handler).verify(CONTEXT, QUESTION, "answer") is None

    @pytest.mark.asyncio
    async def test_malformed_payloads_return_none(self):
        def invalid_json(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"not json")

        def no_results(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"knowledge_available": True, "questions_results": []})

        def missing_verdict(request: httpx.Request) -> httpx.Response:
            return _quiz_reply(is_correct=None)

        assert await _lookup(invalid_json).verify(CONTEXT, QUESTION, "answer") is None
        assert await _lookup(no_results).verify(CONTEXT, QUESTION, "answer") is None
        assert await _lookup(missing_verdict).verify(CONTEXT, QUESTION, "answer") is None

    def test_module_context_lists_options(self):
        question = QuestionSubmission(
            question="Pick one",
            question_type=QuestionType.MULTIPLE_CHOICE,
            options=["A", "B"],
            user_answer="B",
        )
        text = format_module_context([question])
        assert text.startswith("Anchor tag quiz questions to verify:\n1. Pick one")
        assert "  Type: multiple_choice" in text
        assert "  Options: A, B" in text
        assert "  user_answer: B" in text


class TestTimeoutBudget:
    def test_request_timeout_fits_question_budget(self):
        settings = get_settings()
        retries = settings.knowledge_max_retries
        worst_case = settings.knowledge_request_timeout_seconds * (retries + 1) + sum(DEFAULT_BACKOFF[:retries])
        assert worst_case < settings.knowledge_timeout_seconds

    def test_lookup_uses_per_request_timeout(self):
        lookup = HttpKnowledgeLookup()
        assert lookup.timeout == get_settings().knowledge_request_timeout_seconds
        assert lookup.timeout < QuizVerifier(lookup).question_timeout


def _mc(text: str, answer: str) -> QuestionSubmission:
    return QuestionSubmission(
        question=text,
        question_type=QuestionType.MULTIPLE_CHOICE,
        options=["A", "B", "C"],
        user_answer=answer,
        correct_answer="B",
    )


def _batch(*questions) -> VerificationRequest:
    return VerificationRequest(
        module_title=CONTEXT.title,
        module_description=CONTEXT.description,
        questions=list(questions),
    )


class TestVerifierOverHttp:
    @pytest.mark.asyncio
    async def test_objective_batch_needs_no_service_call(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return _quiz_reply()

        verifier = QuizVerifier(_lookup(handler), question_timeout=1.0, batch_deadline=5.0)
        result = await verifier.verify(_batch(_mc("Q1", "B"), _mc("Q2", "B"), _mc("Q3", "B")))

        assert result.knowledge_available is True
        assert result.score_percentage == 100
        assert calls == []

    @pytest.mark.asyncio
    async def test_mixed_batch_three_of_four(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/chat/qa/validate-quiz"
            return _quiz_reply(is_correct=True, score_percentage=90)

        verifier = QuizVerifier(_lookup(handler), question_timeout=1.0, batch_deadline=5.0)
        result = await verifier.verify(_batch(_mc("Q1", "B"), _mc("Q2", "B"), _mc("Q3", "A"), QUESTION))

        assert result.knowledge_available is True
        assert result.total_questions == 4
        assert result.correct_answers == 3
        assert result.score_percentage == 75
        assert result.questions_results[3].score == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_unreachable_service_degrades_whole_batch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        verifier = QuizVerifier(_lookup(handler), question_timeout=1.0, batch_deadline=5.0)
        result = await verifier.verify(_batch(_mc("Q1", "B"), _mc("Q2", "B"), _mc("Q3", "A"), QUESTION))

        assert result.knowledge_available is False
        assert result.total_questions == 4
        assert result.correct_answers == 0
        assert result.score_percentage == 0
        assert result.overall_feedback == UNAVAILABLE_FEEDBACK
        for r in result.questions_results:
            assert r.is_correct is False
            assert r.explanation is None
            assert r.feedback is None
            assert r.score == 0.0

    @pytest.mark.asyncio
    async def test_module_without_knowledge_degrades_whole_batch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return _quiz_reply(is_correct=False, score_percentage=0, knowledge_available=False)

        verifier = QuizVerifier(_lookup(handler), question_timeout=1.0, batch_deadline=5.0)
        result = await verifier.verify(_batch(_mc("Q1", "B"), QUESTION))
        assert result.knowledge_available is False
        assert result.score_percentage == 0
