"""
Checkpoint ("anchor tag") models - gates attached to modules, chapters and
bibliography items, plus the quiz groups and questions they are scored against.
"""

import uuid
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from anchor_gate.kernel.models.base import Base, SoftDeleteMixin, TimestampMixin, generate_uuid


class ContentType(str, Enum):
    """Kind of content a checkpoint is attached to."""

    MODULE = "module"
    CHAPTER = "chapter"
    BIBLIOGRAPHY = "bibliography"


class CheckpointStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class QuestionType(str, Enum):
    """Question types a quiz group may contain."""

    MULTIPLE_CHOICE = "multiple_choice"
    MULTI_SELECT = "multi_select"
    TRUE_FALSE = "true_false"
    OPEN_ENDED = "open_ended"
    SCENARIO_BASED = "scenario_based"

    @property
    def is_objective(self) -> bool:
        """Objective questions are graded against a stored option, without the knowledge source."""
        return self in (QuestionType.MULTIPLE_CHOICE, QuestionType.MULTI_SELECT, QuestionType.TRUE_FALSE)


class QuizGroup(Base, TimestampMixin, SoftDeleteMixin):
    """
    An ordered question set attached to one or more checkpoints.
    module_title/module_description are the context handed to the knowledge source.
    """

    __tablename__ = "quiz_groups"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    module_title: Mapped[str] = mapped_column(String(255), nullable=False)
    module_description: Mapped[str] = mapped_column(Text, nullable=False, default="")


class QuizQuestion(Base, TimestampMixin, SoftDeleteMixin):
    """A single question in a quiz group."""

    __tablename__ = "quiz_questions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    quiz_group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        ForeignKey("quiz_groups.id"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    question_type: Mapped[QuestionType] = mapped_column(String(32), nullable=False)
    options: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)

    # Stored reference option; multi-select keeps the options joined by ", "
    correct_answer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Checkpoint(Base, TimestampMixin, SoftDeleteMixin):
    """
    A mandatory or optional gate attached to a piece of content.

    content_type + content_reference are fixed for the checkpoint's lifetime.
    Archiving sets status=ARCHIVED and deleted_at; attempts keep referencing it.
    """

    __tablename__ = "checkpoints"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=generate_uuid,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    content_type: Mapped[ContentType] = mapped_column(String(32), nullable=False)
    content_reference: Mapped[str] = mapped_column(String(255), nullable=False)

    is_mandatory: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quiz_group_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(),
        ForeignKey("quiz_groups.id"),
        nullable=True,
        index=True,
    )
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[CheckpointStatus] = mapped_column(
        String(32),
        nullable=False,
        default=CheckpointStatus.ACTIVE,
    )
    created_by: Mapped[uuid.UUID] = mapped_column(Uuid(), nullable=False)

    __table_args__ = (
        Index("ix_checkpoints_content_status", "content_reference", "content_type", "status"),
        Index("ix_checkpoints_mandatory_status", "is_mandatory", "status"),
        Index("ix_checkpoints_created_at", "created_at"),
    )

    @property
    def is_active(self) -> bool:
        return CheckpointStatus(self.status) == CheckpointStatus.ACTIVE and self.deleted_at is None
