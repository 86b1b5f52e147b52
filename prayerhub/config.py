"""
Configuration and settings for the prayer community backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service and its daemons."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Database (Postgres expected)
    database_url: Optional[str] = None

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "use_in_memory_backends", "PRAYERHUB_USE_IN_MEMORY_BACKENDS"
        ),
    )

    # Notification outbox (Redis)
    redis_url: Optional[str] = None
    notification_outbox_key: str = Field(default="prayerhub:notifications")

    # Stale-request sweep
    stale_sweep_interval_seconds: int = Field(default=86400, ge=1)
    stale_sweep_jitter_seconds: int = Field(default=60, ge=0)

    password_reset_token_ttl_seconds: int = Field(default=3600, ge=1)
    upcoming_meetings_limit: int = Field(default=50, ge=1)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
