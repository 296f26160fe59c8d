"""
Pydantic schemas for quiz verification requests and results.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from anchor_gate.kernel.models.checkpoint import QuestionType


class QuestionSubmission(BaseModel):
    """One question of a verification batch with the student's answer."""

    question: str
    question_type: QuestionType
    options: Optional[List[str]] = None
    user_answer: Optional[str] = None

    # Filled from the stored quiz question; never taken from the student
    correct_answer: Optional[str] = Field(default=None, exclude=True)
    explanation: Optional[str] = Field(default=None, exclude=True)


class VerificationRequest(BaseModel):
    """A batch of answers to score against one module's knowledge."""

    module_title: str
    module_description: str = ""
    questions: List[QuestionSubmission] = Field(default_factory=list)
    max_results: Optional[int] = Field(default=None, ge=0)

    @property
    def module_context(self) -> "ModuleContext":
        return ModuleContext(title=self.module_title, description=self.module_description)


class ModuleContext(BaseModel):
    """Module context handed to the knowledge source."""

    title: str
    description: str = ""


class QuestionVerificationResult(BaseModel):
    """Per-question breakdown entry."""

    question_index: int
    question: str
    question_type: QuestionType
    user_answer: Optional[str] = None
    is_correct: bool = False
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None
    feedback: Optional[str] = None
    score: float = 0.0


class VerificationResponse(BaseModel):
    """Result of scoring one batch. Aggregates always cover the full batch."""

    total_questions: int
    correct_answers: int
    score_percentage: int
    overall_feedback: str
    knowledge_available: bool
    questions_results: List[QuestionVerificationResult] = Field(default_factory=list)
