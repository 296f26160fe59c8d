"""
Pytest fixtures for anchor_gate tests.

System tests run against a file-based SQLite database (WAL mode) so separate
sessions really are separate connections and contend like production writers.
"""

import uuid
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from anchor_gate.config import get_settings
from anchor_gate.database import build_engine, build_session_maker, init_db
from anchor_gate.engines.checkpoints.checkpoint_service import CheckpointService
from anchor_gate.kernel.models.checkpoint import Checkpoint, ContentType, QuestionType, QuizGroup
from anchor_gate.schemas.checkpoint import CheckpointCreate, QuizGroupCreate, QuizQuestionCreate


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are cached per process; drop the cache around each test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Engine on a throwaway SQLite file with all tables created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'anchor_gate_test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def student_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def author_id() -> uuid.UUID:
    return uuid.uuid4()


def sample_questions() -> List[QuizQuestionCreate]:
    """Three objective questions and one open-ended one."""
    return [
        QuizQuestionCreate(
            question="Which layer routes packets between networks?",
            question_type=QuestionType.MULTIPLE_CHOICE,
            options=["Physical", "Network", "Transport", "Session"],
            correct_answer="Network",
            explanation="The network layer handles routing.",
        ),
        QuizQuestionCreate(
            question="TCP guarantees in-order delivery.",
            question_type=QuestionType.TRUE_FALSE,
            options=["True", "False"],
            correct_answer="True",
        ),
        QuizQuestionCreate(
            question="Select the connection-oriented protocols.",
            question_type=QuestionType.MULTI_SELECT,
            options=["TCP", "UDP", "SCTP"],
            correct_answer="TCP, SCTP",
        ),
        QuizQuestionCreate(
            question="Explain why congestion control matters.",
            question_type=QuestionType.OPEN_ENDED,
        ),
    ]


@pytest_asyncio.fixture
async def quiz_group(db_session: AsyncSession) -> QuizGroup:
    return await CheckpointService(db_session).create_quiz_group(
        QuizGroupCreate(
            title="Networking basics",
            module_title="Computer Networks",
            module_description="Layers, routing and transport protocols.",
            questions=sample_questions(),
        )
    )


async def make_checkpoint(
    session: AsyncSession,
    created_by: uuid.UUID,
    title: str = "Chapter 1 check",
    content_reference: str = "chapter-1",
    content_type: ContentType = ContentType.CHAPTER,
    is_mandatory: bool = True,
    quiz_group_id: Optional[uuid.UUID] = None,
    tags: Optional[List[str]] = None,
) -> Checkpoint:
    return await CheckpointService(session).create_checkpoint(
        CheckpointCreate(
            title=title,
            content_type=content_type,
            content_reference=content_reference,
            is_mandatory=is_mandatory,
            quiz_group_id=quiz_group_id,
            tags=tags or [],
        ),
        created_by=created_by,
    )


@pytest_asyncio.fixture
async def checkpoint(db_session: AsyncSession, author_id: uuid.UUID, quiz_group: QuizGroup) -> Checkpoint:
    return await make_checkpoint(db_session, author_id, quiz_group_id=quiz_group.id)


@pytest.fixture
def checkpoint_factory(db_session: AsyncSession, author_id: uuid.UUID):
    """Create extra checkpoints with the shared session and author."""

    async def factory(**kwargs) -> Checkpoint:
        return await make_checkpoint(db_session, author_id, **kwargs)

    return factory
