"""
Pydantic schemas for the checkpoint registry.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from anchor_gate.kernel.models.checkpoint import CheckpointStatus, ContentType, QuestionType


class QuizQuestionCreate(BaseModel):
    """Question as authored into a quiz group."""

    question: str = Field(..., min_length=1)
    question_type: QuestionType
    options: Optional[List[str]] = None
    correct_answer: Optional[str] = None
    explanation: Optional[str] = None


class QuizGroupCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    module_title: str = Field(..., min_length=1, max_length=255)
    module_description: str = ""
    questions: List[QuizQuestionCreate] = Field(default_factory=list)


class CheckpointCreate(BaseModel):
    """Create an anchor tag on a piece of content."""

    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    content_type: ContentType
    content_reference: str = Field(..., min_length=1, max_length=255)
    is_mandatory: bool = False
    quiz_group_id: Optional[uuid.UUID] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title must not be blank")
        return v


class CheckpointUpdate(BaseModel):
    """Partial update. content_type/content_reference may be sent but must not change."""

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    content_type: Optional[ContentType] = None
    content_reference: Optional[str] = None
    is_mandatory: Optional[bool] = None
    quiz_group_id: Optional[uuid.UUID] = None
    tags: Optional[List[str]] = None


class CheckpointFilter(BaseModel):
    content_type: Optional[ContentType] = None
    content_reference: Optional[str] = None
    status: Optional[CheckpointStatus] = None
    is_mandatory: Optional[bool] = None
    quiz_group_id: Optional[uuid.UUID] = None
    tags: Optional[List[str]] = None
    search: Optional[str] = None
    include_deleted: bool = False


class CheckpointRead(BaseModel):
    id: uuid.UUID
    title: str
    description: Optional[str] = None
    content_type: ContentType
    content_reference: str
    is_mandatory: bool
    quiz_group_id: Optional[uuid.UUID] = None
    tags: List[str] = Field(default_factory=list)
    status: CheckpointStatus
    created_by: uuid.UUID
    created_at: datetime
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True
