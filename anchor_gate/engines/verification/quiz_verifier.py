"""
Quiz Verification Engine - scores one batch of mixed-type answers.

Stateless and side-effect free: the caller folds the outcome into an attempt
through the ledger. Knowledge-source outages never raise; they downgrade the
result (whole batch when the source reports itself unavailable, single
questions on timeout), and aggregates are always computed over the full batch.
"""

import asyncio
import math
from collections import OrderedDict
from typing import List, Optional, Tuple

from anchor_gate.config import get_settings
from anchor_gate.engines.verification.grader import Grader
from anchor_gate.engines.verification.knowledge_lookup import KnowledgeLookup
from anchor_gate.errors import ValidationError
from anchor_gate.logging_config import get_logger
from anchor_gate.schemas.verification import (
    ModuleContext,
    QuestionSubmission,
    QuestionVerificationResult,
    VerificationRequest,
    VerificationResponse,
)

logger = get_logger(__name__)

UNAVAILABLE_FEEDBACK = (
    "Automated verification could not be performed because reference knowledge "
    "for this module is unavailable. Your answers have been recorded."
)
NOTHING_TO_GRADE_FEEDBACK = "There was nothing to grade: the quiz contained no questions."


class KnowledgeUnavailable(Exception):
    """The knowledge source answered a question with 'unavailable'."""


def score_percentage(correct: int, total: int) -> int:
    """round(100 * correct / total), halves rounded up; 0 for an empty batch."""
    if total <= 0:
        return 0
    return int(math.floor(100 * correct / total + 0.5))


def indeterminate_result(index: int, question: QuestionSubmission) -> QuestionVerificationResult:
    """A question whose correctness could not be established."""
    return QuestionVerificationResult(
        question_index=index,
        question=question.question,
        question_type=question.question_type,
        user_answer=question.user_answer,
        is_correct=False,
        correct_answer=None,
        explanation=None,
        feedback=None,
        score=0.0,
    )


def synthesize_feedback(results: List[QuestionVerificationResult]) -> str:
    """Local summary naming the weakest-performing question category."""
    total = len(results)
    if total == 0:
        return NOTHING_TO_GRADE_FEEDBACK
    correct = sum(1 for r in results if r.is_correct)
    headline = f"You answered {correct} of {total} questions correctly ({score_percentage(correct, total)}%)."
    if correct == total:
        return f"{headline} Well done."

    by_category: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()
    for r in results:
        label = r.question_type.value.replace("_", " ")
        right, seen = by_category.get(label, (0, 0))
        by_category[label] = (right + (1 if r.is_correct else 0), seen + 1)

    weakest, (right, seen) = min(by_category.items(), key=lambda item: item[1][0] / item[1][1])
    return f"{headline} Weakest area: {weakest} questions ({right} of {seen} correct)."


class QuizVerifier:
    """
    Scores a VerificationRequest.

    Objective questions with a stored option are graded locally. Everything else
    goes to the knowledge source, at most `max_concurrency` at a time, each
    bounded by `question_timeout`. The batch waits for every question, its
    timeout, the batch deadline or the cancel event, whichever comes first.
    A verdict of "unavailable" from the source degrades the whole batch; a
    batch of objective questions never contacts the source at all.
    """

    def __init__(
        self,
        lookup: KnowledgeLookup,
        question_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        batch_deadline: Optional[float] = None,
    ):
        settings = get_settings()
        self.lookup = lookup
        self.question_timeout = question_timeout if question_timeout is not None else settings.knowledge_timeout_seconds
        self.max_concurrency = max(1, max_concurrency or settings.verification_max_concurrency)
        self.batch_deadline = (
            batch_deadline if batch_deadline is not None else settings.verification_batch_deadline_seconds
        )

    async def verify(
        self,
        request: VerificationRequest,
        require_questions: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> VerificationResponse:
        """
        Score one batch.

        Raises:
            ValidationError: no questions while require_questions is set, or a
                question without a submitted answer
        """
        self._validate(request, require_questions)
        context = request.module_context

        if not request.questions:
            return self._build(request, [], knowledge_available=True, overall_feedback=NOTHING_TO_GRADE_FEEDBACK)

        if not await self._knowledge_available(context):
            return self._degraded(request)

        results = await self._evaluate_all(context, request.questions, cancel_event)
        if results is None:
            return self._degraded(request)
        feedback = await self._overall_feedback(context, results)
        return self._build(request, results, knowledge_available=True, overall_feedback=feedback)

    # --- steps ---

    @staticmethod
    def _validate(request: VerificationRequest, require_questions: bool) -> None:
        if require_questions and not request.questions:
            raise ValidationError("At least one question is required", code="no_questions")
        for i, q in enumerate(request.questions):
            if q.user_answer is None or not q.user_answer.strip():
                raise ValidationError(f"Question {i + 1} has no submitted answer", code="missing_answer")

    async def _knowledge_available(self, context: ModuleContext) -> bool:
        try:
            return bool(await asyncio.wait_for(self.lookup.has_knowledge(context), timeout=self.question_timeout))
        except asyncio.TimeoutError:
            logger.warning("Knowledge availability check timed out", extra={"module_title": context.title})
            return False
        except Exception:
            logger.warning("Knowledge availability check failed", exc_info=True)
            return False

    async def _evaluate_open(
        self,
        context: ModuleContext,
        index: int,
        question: QuestionSubmission,
    ) -> QuestionVerificationResult:
        try:
            verdict = await asyncio.wait_for(
                self.lookup.verify(context, question, question.user_answer.strip()),
                timeout=self.question_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Question verification timed out", extra={"question_index": index})
            return indeterminate_result(index, question)
        except Exception:
            logger.warning("Question verification failed", extra={"question_index": index}, exc_info=True)
            return indeterminate_result(index, question)

        if verdict is None:
            raise KnowledgeUnavailable(index)
        return QuestionVerificationResult(
            question_index=index,
            question=question.question,
            question_type=question.question_type,
            user_answer=question.user_answer,
            is_correct=verdict.is_correct,
            correct_answer=question.correct_answer,
            explanation=verdict.explanation,
            feedback=verdict.feedback,
            score=verdict.score,
        )

    async def _evaluate_all(
        self,
        context: ModuleContext,
        questions: List[QuestionSubmission],
        cancel_event: Optional[asyncio.Event],
    ) -> Optional[List[QuestionVerificationResult]]:
        """Per-question results in request order, or None once the source reports itself unavailable."""
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(index: int, question: QuestionSubmission) -> QuestionVerificationResult:
            if Grader.can_grade(question):
                return Grader.grade(index, question)
            async with semaphore:
                return await self._evaluate_open(context, index, question)

        tasks = [asyncio.create_task(run(i, q)) for i, q in enumerate(questions)]
        cancel_waiter = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.batch_deadline if self.batch_deadline else None
        pending = set(tasks)
        unavailable = False

        try:
            while pending and not unavailable:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        logger.warning("Batch deadline elapsed", extra={"pending": len(pending)})
                        break
                watch = pending | {cancel_waiter} if cancel_waiter is not None else pending
                done, _ = await asyncio.wait(watch, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                unavailable = any(
                    t is not cancel_waiter and not t.cancelled() and isinstance(t.exception(), KnowledgeUnavailable)
                    for t in done
                )
                if cancel_waiter is not None and cancel_waiter in done:
                    logger.info("Batch cancelled by caller", extra={"pending": len(pending)})
                    break
        finally:
            leftovers = list(pending) + ([cancel_waiter] if cancel_waiter is not None else [])
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)

        if unavailable:
            return None

        results: List[QuestionVerificationResult] = []
        for index, (question, task) in enumerate(zip(questions, tasks)):
            if task.cancelled():
                results.append(indeterminate_result(index, question))
            elif task.exception() is not None:
                logger.warning("Question evaluation crashed", extra={"question_index": index}, exc_info=task.exception())
                results.append(indeterminate_result(index, question))
            else:
                results.append(task.result())
        return results

    async def _overall_feedback(self, context: ModuleContext, results: List[QuestionVerificationResult]) -> str:
        try:
            summary = await asyncio.wait_for(self.lookup.summarize(context, results), timeout=self.question_timeout)
        except asyncio.TimeoutError:
            logger.warning("Feedback summary timed out", extra={"module_title": context.title})
            summary = None
        except Exception:
            logger.warning("Feedback summary failed", exc_info=True)
            summary = None
        return summary or synthesize_feedback(results)

    def _degraded(self, request: VerificationRequest) -> VerificationResponse:
        logger.info(
            "Reference knowledge unavailable, returning degraded result",
            extra={"module_title": request.module_context.title, "questions": len(request.questions)},
        )
        results = [indeterminate_result(i, q) for i, q in enumerate(request.questions)]
        return self._build(request, results, knowledge_available=False, overall_feedback=UNAVAILABLE_FEEDBACK)

    @staticmethod
    def _build(
        request: VerificationRequest,
        results: List[QuestionVerificationResult],
        knowledge_available: bool,
        overall_feedback: str,
    ) -> VerificationResponse:
        total = len(results)
        correct = sum(1 for r in results if r.is_correct)
        shown = results
        if request.max_results is not None and request.max_results < total:
            shown = results[: request.max_results]
        return VerificationResponse(
            total_questions=total,
            correct_answers=correct,
            score_percentage=score_percentage(correct, total),
            overall_feedback=overall_feedback,
            knowledge_available=knowledge_available,
            questions_results=shown,
        )
