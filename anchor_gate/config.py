"""
Application configuration using pydantic-settings.
Loads from environment variables with .env file support.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./anchor_gate.db"

    # Application
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    project_name: str = "Anchor Gate"
    version: str = "1.0.0"

    # Knowledge service (external QA service that judges open-ended answers)
    knowledge_service_url: str = "http://localhost:8000"
    knowledge_timeout_seconds: float = 8.0  # per-question budget, retries included
    knowledge_request_timeout_seconds: float = 2.0  # per HTTP request
    knowledge_max_retries: int = 2

    # Verification engine
    verification_max_concurrency: int = 4
    verification_batch_deadline_seconds: float = 30.0

    # Attempt ledger
    ledger_max_retries: int = 3
    attempt_timeout_minutes: int = 90  # IN_PROGRESS attempts older than this are abandoned

    # Progression
    checkpoint_pass_percentage: int = 80


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
