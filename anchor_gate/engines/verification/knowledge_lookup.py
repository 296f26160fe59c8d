"""
Knowledge Lookup - the external collaborator that judges open-ended answers
against module content.

The HTTP binding talks to the QA service. Outages never raise out of this module:
verify() returns None, meaning the source is unavailable, and the verification
engine downgrades the whole batch accordingly.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx
from pydantic import BaseModel, field_validator

from anchor_gate.config import get_settings
from anchor_gate.logging_config import get_logger
from anchor_gate.schemas.verification import ModuleContext, QuestionSubmission, QuestionVerificationResult

logger = get_logger(__name__)

RETRY_BACKOFF = (0.5, 1.0, 2.0)  # seconds


class KnowledgeVerdict(BaseModel):
    """The knowledge source's judgment of one answer."""

    is_correct: bool
    score: float = 0.0
    explanation: Optional[str] = None
    feedback: Optional[str] = None

    @field_validator("score")
    @classmethod
    def clamp_score(cls, v: float) -> float:
        return min(1.0, max(0.0, float(v)))


class KnowledgeLookup(ABC):
    """Interface consumed by the verification engine."""

    async def has_knowledge(self, context: ModuleContext) -> bool:
        """
        Cheap pre-check for reference knowledge. Sources that can only tell by
        answering keep the default and report unavailability from verify().
        """
        return True

    @abstractmethod
    async def verify(
        self,
        context: ModuleContext,
        question: QuestionSubmission,
        answer: str,
    ) -> Optional[KnowledgeVerdict]:
        """Judge one answer. None means the source is unavailable."""

    async def summarize(
        self,
        context: ModuleContext,
        results: List[QuestionVerificationResult],
    ) -> Optional[str]:
        """Short overall feedback for a scored batch, or None for local synthesis."""
        return None


class UnavailableKnowledgeLookup(KnowledgeLookup):
    """Stand-in for deployments without a knowledge service: always degraded."""

    async def has_knowledge(self, context: ModuleContext) -> bool:
        return False

    async def verify(self, context, question, answer) -> Optional[KnowledgeVerdict]:
        return None


async def _request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    max_retries: int,
    **kwargs: Any,
) -> httpx.Response:
    """Perform request with backoff for 5xx, timeouts and connection errors."""
    attempts = max(1, max_retries + 1)
    last_exc: Optional[Exception] = None
    for attempt in range(attempts):
        try:
            response = await client.request(method, url, **kwargs)
            if response.status_code >= 500 and attempt < attempts - 1:
                await asyncio.sleep(RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)])
                continue
            return response
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            last_exc = e
            if attempt < attempts - 1:
                await asyncio.sleep(RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)])
    assert last_exc is not None
    raise last_exc


def format_module_context(questions: List[QuestionSubmission]) -> str:
    """Numbered plain-text listing of the questions, as the QA service expects."""
    blocks = []
    for i, q in enumerate(questions, start=1):
        lines = [f"{i}. {q.question}", f"  Type: {q.question_type.value}"]
        if q.options:
            lines.append(f"  Options: {', '.join(q.options)}")
        lines.append(f"  user_answer: {q.user_answer or ''}")
        blocks.append("\n".join(lines))
    return "Anchor tag quiz questions to verify:\n" + "\n\n".join(blocks)


class HttpKnowledgeLookup(KnowledgeLookup):
    """
    HTTP binding for the QA service.

    Endpoint:
        POST /chat/qa/validate-quiz
            {module_title, module_description, module_context, questions, max_results}
            -> {score_percentage, knowledge_available, overall_feedback, questions_results: [...]}

    Each answer is sent as a single-question batch. A response with
    knowledge_available=false, like a transport failure, means unavailable.
    """

    VALIDATE_QUIZ_PATH = "/chat/qa/validate-quiz"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.knowledge_service_url).rstrip("/")
        # Per HTTP request; the engine's per-question budget covers all retries
        self.timeout = timeout if timeout is not None else settings.knowledge_request_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.knowledge_max_retries
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Content-Type": "application/json"},
        )

    async def _post(self, path: str, payload: dict) -> Optional[dict]:
        """POST and return the JSON body, or None on any transport/HTTP/parse failure."""
        try:
            async with self._client() as client:
                response = await _request_with_retry(client, "POST", path, self.max_retries, json=payload)
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            logger.warning("Knowledge service request failed (%s): %s", path, e)
            return None
        except httpx.HTTPError as e:
            logger.warning("Knowledge service transport error (%s): %s", path, e)
            return None

        if response.status_code != 200:
            logger.warning(
                "Knowledge service returned %s for %s",
                response.status_code,
                path,
                extra={"status_code": response.status_code},
            )
            return None
        try:
            data = response.json()
        except ValueError as e:
            logger.warning("Knowledge service returned invalid JSON (%s): %s", path, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Knowledge service returned non-object JSON for %s", path)
            return None
        return data

    async def verify(
        self,
        context: ModuleContext,
        question: QuestionSubmission,
        answer: str,
    ) -> Optional[KnowledgeVerdict]:
        submitted = question.model_copy(update={"user_answer": answer})
        data = await self._post(
            self.VALIDATE_QUIZ_PATH,
            {
                "module_title": context.title,
                "module_description": context.description,
                "module_context": format_module_context([submitted]),
                "questions": [submitted.model_dump(mode="json", exclude_none=True)],
                "max_results": 1,
            },
        )
        if data is None:
            return None
        if data.get("knowledge_available") is False:
            logger.info("Knowledge service has no reference knowledge", extra={"module_title": context.title})
            return None

        results = data.get("questions_results")
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            logger.warning("Knowledge service returned no question results")
            return None
        item = results[0]
        # Single-question batch: the batch percentage is this answer's score
        percentage = data.get("score_percentage")
        score = percentage / 100 if isinstance(percentage, (int, float)) else item.get("score", 0.0)
        try:
            return KnowledgeVerdict.model_validate(
                {
                    "is_correct": item.get("is_correct"),
                    "score": score,
                    "explanation": item.get("explanation"),
                    "feedback": item.get("feedback"),
                }
            )
        except ValueError as e:
            logger.warning("Knowledge service verdict did not validate: %s", e)
            return None
