"""
Stale-attempt sweeper.

Closes attempts left IN_PROGRESS longer than ATTEMPT_TIMEOUT_MINUTES, so the
students behind them fall back to RETRY_REQUIRED. Meant for cron or a
scheduler:

    python -m anchor_gate.sweeper
"""

import asyncio

from anchor_gate.config import get_settings
from anchor_gate.database import close_db, get_session_maker, init_db
from anchor_gate.engines.verification.knowledge_lookup import UnavailableKnowledgeLookup
from anchor_gate.engines.verification.quiz_verifier import QuizVerifier
from anchor_gate.logging_config import configure_logging, get_logger
from anchor_gate.orchestration.progression import ProgressionService

logger = get_logger(__name__)


async def run_sweep() -> int:
    """Initialize storage, sweep once, release connections. Returns the number abandoned."""
    settings = get_settings()
    logger.info("Starting %s v%s sweep", settings.project_name, settings.version)
    await init_db()
    try:
        async with get_session_maker()() as session:
            # Sweeping never scores, so no knowledge service is needed
            service = ProgressionService(session, verifier=QuizVerifier(UnavailableKnowledgeLookup()))
            abandoned = await service.sweep_stale_attempts()
    finally:
        await close_db()
    logger.info("Sweep finished", extra={"abandoned": abandoned})
    return abandoned


def main() -> None:
    settings = get_settings()
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )
    asyncio.run(run_sweep())


if __name__ == "__main__":
    main()
