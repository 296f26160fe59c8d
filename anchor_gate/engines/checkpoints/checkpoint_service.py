"""
Checkpoint Service - registers anchor tags on content and the quiz groups
they are scored against.

Checkpoints are never hard-deleted: archiving tombstones them so attempt
history keeps its foreign keys.
"""

import uuid
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_gate.engines.verification.grader import normalize_option, split_selection
from anchor_gate.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from anchor_gate.kernel.models.base import utcnow
from anchor_gate.kernel.models.checkpoint import (
    Checkpoint,
    CheckpointStatus,
    ContentType,
    QuestionType,
    QuizGroup,
    QuizQuestion,
)
from anchor_gate.logging_config import get_logger
from anchor_gate.schemas.checkpoint import (
    CheckpointCreate,
    CheckpointFilter,
    CheckpointUpdate,
    QuizGroupCreate,
)

logger = get_logger(__name__)


class CheckpointService:
    """CRUD and archiving for checkpoints, quiz groups and their questions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # --- quiz groups ---

    async def create_quiz_group(self, data: QuizGroupCreate) -> QuizGroup:
        """Create a quiz group with its questions, positioned in the given order."""
        for i, q in enumerate(data.questions):
            if not (q.question_type.is_objective and q.options and q.correct_answer):
                continue
            if q.question_type == QuestionType.MULTI_SELECT:
                expected = split_selection(q.correct_answer, q.options)
                options = {normalize_option(option) for option in q.options}
            else:
                expected = {q.correct_answer.strip()}
                options = {option.strip() for option in q.options}
            missing = sorted(answer for answer in expected if answer not in options)
            if missing:
                raise ValidationError(
                    f"Question {i + 1}: correct answer {missing} is not among its options",
                    code="answer_not_in_options",
                )

        group = QuizGroup(
            title=data.title.strip(),
            module_title=data.module_title.strip(),
            module_description=data.module_description,
        )
        self.session.add(group)
        await self.session.flush()

        for position, q in enumerate(data.questions):
            self.session.add(
                QuizQuestion(
                    quiz_group_id=group.id,
                    position=position,
                    question=q.question,
                    question_type=q.question_type.value,
                    options=q.options,
                    correct_answer=q.correct_answer,
                    explanation=q.explanation,
                )
            )
        await self.session.commit()
        await self.session.refresh(group)

        logger.info(
            "Quiz group created",
            extra={"quiz_group_id": str(group.id), "questions": len(data.questions)},
        )
        return group

    async def get_quiz_group(self, quiz_group_id: uuid.UUID) -> QuizGroup:
        result = await self.session.execute(
            select(QuizGroup).where(
                QuizGroup.id == quiz_group_id,
                QuizGroup.deleted_at.is_(None),
            )
        )
        group = result.scalar_one_or_none()
        if group is None:
            raise NotFoundError(f"Quiz group {quiz_group_id} not found", code="quiz_group_not_found")
        return group

    async def get_quiz_questions(self, quiz_group_id: uuid.UUID) -> List[QuizQuestion]:
        """Questions of a quiz group ordered by position."""
        await self.get_quiz_group(quiz_group_id)
        result = await self.session.execute(
            select(QuizQuestion)
            .where(
                QuizQuestion.quiz_group_id == quiz_group_id,
                QuizQuestion.deleted_at.is_(None),
            )
            .order_by(QuizQuestion.position)
        )
        return list(result.scalars().all())

    # --- checkpoints ---

    async def _title_taken(
        self,
        content_type: ContentType,
        content_reference: str,
        title: str,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> bool:
        q = select(Checkpoint.id).where(
            Checkpoint.content_type == ContentType(content_type).value,
            Checkpoint.content_reference == content_reference,
            func.lower(Checkpoint.title) == title.lower(),
            Checkpoint.deleted_at.is_(None),
        )
        if exclude_id is not None:
            q = q.where(Checkpoint.id != exclude_id)
        result = await self.session.execute(q.limit(1))
        return result.first() is not None

    async def create_checkpoint(self, data: CheckpointCreate, created_by: uuid.UUID) -> Checkpoint:
        """
        Attach a checkpoint to a piece of content.

        Raises:
            NotFoundError: quiz_group_id does not name a live quiz group
            ConflictError: the unit already has a checkpoint with this title
        """
        if data.quiz_group_id is not None:
            await self.get_quiz_group(data.quiz_group_id)

        if await self._title_taken(data.content_type, data.content_reference, data.title):
            raise ConflictError(
                f"A checkpoint titled '{data.title}' already exists for this content",
                code="duplicate_title",
            )

        checkpoint = Checkpoint(
            title=data.title,
            description=data.description,
            content_type=data.content_type.value,
            content_reference=data.content_reference,
            is_mandatory=data.is_mandatory,
            quiz_group_id=data.quiz_group_id,
            tags=list(data.tags),
            status=CheckpointStatus.ACTIVE.value,
            created_by=created_by,
        )
        self.session.add(checkpoint)
        await self.session.commit()
        await self.session.refresh(checkpoint)

        logger.info(
            "Checkpoint created",
            extra={
                "checkpoint_id": str(checkpoint.id),
                "content_type": data.content_type.value,
                "content_reference": data.content_reference,
                "is_mandatory": data.is_mandatory,
            },
        )
        return checkpoint

    async def get_checkpoint(self, checkpoint_id: uuid.UUID, include_deleted: bool = False) -> Checkpoint:
        q = select(Checkpoint).where(Checkpoint.id == checkpoint_id)
        if not include_deleted:
            q = q.where(Checkpoint.deleted_at.is_(None))
        result = await self.session.execute(q)
        checkpoint = result.scalar_one_or_none()
        if checkpoint is None:
            raise NotFoundError(f"Checkpoint {checkpoint_id} not found", code="checkpoint_not_found")
        return checkpoint

    async def list_checkpoints(self, filters: Optional[CheckpointFilter] = None) -> List[Checkpoint]:
        """Checkpoints matching every given filter, newest first."""
        filters = filters or CheckpointFilter()
        q = select(Checkpoint)
        if not filters.include_deleted:
            q = q.where(Checkpoint.deleted_at.is_(None))
        if filters.content_type is not None:
            q = q.where(Checkpoint.content_type == filters.content_type.value)
        if filters.content_reference is not None:
            q = q.where(Checkpoint.content_reference == filters.content_reference)
        if filters.status is not None:
            q = q.where(Checkpoint.status == filters.status.value)
        if filters.is_mandatory is not None:
            q = q.where(Checkpoint.is_mandatory == filters.is_mandatory)
        if filters.quiz_group_id is not None:
            q = q.where(Checkpoint.quiz_group_id == filters.quiz_group_id)
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            q = q.where(or_(Checkpoint.title.ilike(pattern), Checkpoint.description.ilike(pattern)))
        q = q.order_by(Checkpoint.created_at.desc(), Checkpoint.title)

        result = await self.session.execute(q)
        checkpoints = list(result.scalars().all())

        # JSON containment differs per backend; match tags in Python
        if filters.tags:
            wanted = set(filters.tags)
            checkpoints = [cp for cp in checkpoints if wanted.intersection(cp.tags or [])]
        return checkpoints

    async def update_checkpoint(self, checkpoint_id: uuid.UUID, changes: CheckpointUpdate) -> Checkpoint:
        """
        Apply a partial update.

        Raises:
            NotFoundError: checkpoint or new quiz group missing
            InvalidStateError: checkpoint is archived
            ValidationError: content_type or content_reference would change
            ConflictError: new title collides within the unit
        """
        checkpoint = await self.get_checkpoint(checkpoint_id, include_deleted=True)
        if CheckpointStatus(checkpoint.status) == CheckpointStatus.ARCHIVED or checkpoint.is_deleted:
            raise InvalidStateError(f"Checkpoint {checkpoint_id} is archived", code="checkpoint_archived")

        fields = changes.model_dump(exclude_unset=True)
        if "content_type" in fields and fields["content_type"] is not None:
            if ContentType(fields["content_type"]) != ContentType(checkpoint.content_type):
                raise ValidationError("content_type cannot be changed", code="content_immutable")
        if "content_reference" in fields and fields["content_reference"] is not None:
            if fields["content_reference"] != checkpoint.content_reference:
                raise ValidationError("content_reference cannot be changed", code="content_immutable")
        fields.pop("content_type", None)
        fields.pop("content_reference", None)

        if fields.get("title") is not None:
            title = fields["title"].strip()
            if not title:
                raise ValidationError("Title must not be blank")
            if await self._title_taken(
                checkpoint.content_type, checkpoint.content_reference, title, exclude_id=checkpoint.id
            ):
                raise ConflictError(
                    f"A checkpoint titled '{title}' already exists for this content",
                    code="duplicate_title",
                )
            fields["title"] = title
        if fields.get("quiz_group_id") is not None:
            await self.get_quiz_group(fields["quiz_group_id"])

        for key, value in fields.items():
            if value is None and key in ("title", "is_mandatory", "tags"):
                continue
            setattr(checkpoint, key, list(value) if key == "tags" else value)

        await self.session.commit()
        await self.session.refresh(checkpoint)
        logger.info(
            "Checkpoint updated",
            extra={"checkpoint_id": str(checkpoint_id), "fields": sorted(fields)},
        )
        return checkpoint

    async def archive_checkpoint(self, checkpoint_id: uuid.UUID) -> Checkpoint:
        """Tombstone a checkpoint. Archiving twice is a no-op."""
        checkpoint = await self.get_checkpoint(checkpoint_id, include_deleted=True)
        if CheckpointStatus(checkpoint.status) == CheckpointStatus.ARCHIVED:
            return checkpoint

        checkpoint.status = CheckpointStatus.ARCHIVED.value
        checkpoint.deleted_at = utcnow()
        await self.session.commit()
        await self.session.refresh(checkpoint)
        logger.info("Checkpoint archived", extra={"checkpoint_id": str(checkpoint_id)})
        return checkpoint
