"""
Grader - auto-grading of objective questions against the stored option.
"""

from typing import FrozenSet, List, Optional, Sequence

from anchor_gate.kernel.models.checkpoint import QuestionType
from anchor_gate.schemas.verification import QuestionSubmission, QuestionVerificationResult


def _parts(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def normalize_option(option: str) -> str:
    """Option text with whitespace around its commas normalized."""
    return ", ".join(_parts(option))


def split_selection(value: Optional[str], options: Optional[Sequence[str]] = None) -> FrozenSet[str]:
    """
    Comma-separated multi-select answer -> set of chosen options.

    Options that contain commas themselves are recognized as a unit, longest
    option first, so "Paris, France" is one choice when it is a listed option.
    """
    parts = _parts(value or "")
    known = sorted({tuple(_parts(o)) for o in options or [] if _parts(o)}, key=len, reverse=True)
    chosen = set()
    i = 0
    while i < len(parts):
        for option in known:
            if tuple(parts[i : i + len(option)]) == option:
                chosen.add(", ".join(option))
                i += len(option)
                break
        else:
            chosen.add(parts[i])
            i += 1
    return frozenset(chosen)


class Grader:
    """
    Grades objective questions: exact, case-sensitive match of the trimmed
    answer with the stored option. Multi-select compares option sets, so
    every correct option must be chosen and no incorrect one.
    """

    CORRECT_SCORE = 1.0
    INCORRECT_SCORE = 0.0

    @classmethod
    def can_grade(cls, question: QuestionSubmission) -> bool:
        """Objective type with a stored reference option."""
        return question.question_type.is_objective and bool((question.correct_answer or "").strip())

    @classmethod
    def is_correct(cls, question: QuestionSubmission) -> bool:
        submitted = (question.user_answer or "").strip()
        expected = (question.correct_answer or "").strip()
        if question.question_type == QuestionType.MULTI_SELECT:
            options = question.options
            return bool(expected) and split_selection(submitted, options) == split_selection(expected, options)
        return bool(expected) and submitted == expected

    @classmethod
    def grade(cls, index: int, question: QuestionSubmission) -> QuestionVerificationResult:
        correct = cls.is_correct(question)
        if correct:
            feedback = "Correct."
        else:
            feedback = f"Incorrect. The correct answer is: {question.correct_answer.strip()}"
        return QuestionVerificationResult(
            question_index=index,
            question=question.question,
            question_type=question.question_type,
            user_answer=question.user_answer,
            is_correct=correct,
            correct_answer=question.correct_answer,
            explanation=question.explanation,
            feedback=feedback,
            score=cls.CORRECT_SCORE if correct else cls.INCORRECT_SCORE,
        )
