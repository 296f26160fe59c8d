"""System test for the stale-attempt sweeper entry point."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from anchor_gate.config import get_settings
from anchor_gate.database import build_engine, build_session_maker, init_db
from anchor_gate.engines.checkpoints.checkpoint_service import CheckpointService
from anchor_gate.engines.ledger.attempt_ledger import AttemptLedger
from anchor_gate.kernel.models.attempt import AttemptStatus, CheckpointAttempt
from anchor_gate.kernel.models.base import utcnow
from anchor_gate.kernel.models.checkpoint import ContentType
from anchor_gate.schemas.checkpoint import CheckpointCreate
from anchor_gate.sweeper import run_sweep


@pytest.mark.asyncio
async def test_run_sweep_uses_configured_timeout(tmp_path, monkeypatch):
    url = f"sqlite+aiosqlite:///{tmp_path / 'sweep.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("ATTEMPT_TIMEOUT_MINUTES", "30")
    get_settings.cache_clear()

    engine = build_engine(url)
    await init_db(engine)
    async with build_session_maker(engine)() as session:
        checkpoint = await CheckpointService(session).create_checkpoint(
            CheckpointCreate(title="Module gate", content_type=ContentType.MODULE, content_reference="m-1"),
            created_by=uuid.uuid4(),
        )
        ledger = AttemptLedger(session)
        stale = await ledger.start_attempt(uuid.uuid4(), checkpoint.id)
        recent = await ledger.start_attempt(uuid.uuid4(), checkpoint.id)
        await session.execute(
            update(CheckpointAttempt)
            .where(CheckpointAttempt.id == stale.id)
            .values(started_at=utcnow() - timedelta(minutes=31))
        )
        await session.commit()
        stale_id, recent_id = stale.id, recent.id

    assert await run_sweep() == 1

    async with build_session_maker(engine)() as session:
        ledger = AttemptLedger(session)
        assert (await ledger.get_attempt(stale_id)).attempt_status == AttemptStatus.FAILED
        assert (await ledger.get_attempt(recent_id)).attempt_status == AttemptStatus.IN_PROGRESS
    await engine.dispose()
