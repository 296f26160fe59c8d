"""
Pydantic schemas for attempts and the typed attempt metadata container.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from anchor_gate.kernel.models.attempt import AttemptStatus

ATTEMPT_METADATA_SCHEMA_VERSION = 1

ExtensionValue = Union[str, int, float, bool, None]


class SubmittedAnswer(BaseModel):
    """A student's answer to one stored quiz question."""

    question_id: uuid.UUID
    answer: Optional[str] = None


class VerificationSummary(BaseModel):
    """The part of a VerificationResponse folded into the closing attempt."""

    total_questions: int
    correct_answers: int
    score_percentage: int
    knowledge_available: bool
    overall_feedback: Optional[str] = None


class AttemptMetadata(BaseModel):
    """
    Typed key-value payload stored on an attempt.

    Version 1 fields:
        submitted_answers: answers as submitted, in quiz order
        verification: aggregate outcome of the scoring run
        verification_degraded: knowledge source unavailable, answers left unscored
        close_reason: "submitted" or "abandoned"
        client: free-text client identifier (e.g. "web", "mobile")
        extensions: forward-compatible scalars keyed by "<namespace>.<name>"
    """

    schema_version: int = ATTEMPT_METADATA_SCHEMA_VERSION
    submitted_answers: List[SubmittedAnswer] = Field(default_factory=list)
    verification: Optional[VerificationSummary] = None
    verification_degraded: bool = False
    close_reason: Optional[str] = None
    client: Optional[str] = None
    extensions: Dict[str, ExtensionValue] = Field(default_factory=dict)

    @field_validator("schema_version")
    @classmethod
    def known_version(cls, v: int) -> int:
        if v < 1 or v > ATTEMPT_METADATA_SCHEMA_VERSION:
            raise ValueError(f"Unsupported attempt metadata schema_version {v}")
        return v

    @field_validator("extensions")
    @classmethod
    def namespaced_keys(cls, v: Dict[str, ExtensionValue]) -> Dict[str, ExtensionValue]:
        for key in v:
            namespace, _, name = key.partition(".")
            if not namespace or not name:
                raise ValueError(f"Extension key '{key}' must look like '<namespace>.<name>'")
        return v


class AttemptRead(BaseModel):
    """Attempt as returned to callers."""

    id: uuid.UUID
    student_id: uuid.UUID
    checkpoint_id: uuid.UUID
    attempt_number: int
    status: AttemptStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    time_spent_seconds: Optional[int] = None
    is_correct: Optional[bool] = None
    score: Optional[float] = None

    class Config:
        from_attributes = True
