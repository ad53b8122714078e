"""Runtime configuration loaded from the environment."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration (``SIGNUPS_*`` environment variables)."""

    model_config = SettingsConfigDict(
        env_prefix="SIGNUPS_", env_file=".env", env_file_encoding="utf-8"
    )

    project_name: str = "Community Event Signups"
    reminder_window_days: int = Field(default=3, gt=0)
    capacity_retry_limit: int = Field(default=3, ge=1)
    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
