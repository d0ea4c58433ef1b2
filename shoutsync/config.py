"""
Runtime configuration helpers for the sync layer.

Loads backend credentials and tuning knobs from the environment, falling back
to the .env file located in the project root.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root
BASE_DIR = Path(__file__).resolve().parents[1]

# Absolute path to .env
ENV_PATH = BASE_DIR / ".env"

# Load .env defaults without overriding environment variables provided by the platform
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    backend_url: str = Field(default="http://localhost:54321", alias="SUPABASE_URL")
    anon_key: str = Field(default="", alias="SUPABASE_ANON_KEY")
    access_token: str | None = Field(default=None, alias="SUPABASE_ACCESS_TOKEN")

    http_timeout: float = Field(default=10.0, alias="SHOUTSYNC_HTTP_TIMEOUT")
    refetch_debounce_ms: int = Field(default=100, alias="SHOUTSYNC_REFETCH_DEBOUNCE_MS")
    notification_window_days: int = Field(default=7, alias="SHOUTSYNC_NOTIFICATION_WINDOW_DAYS")
    notification_limit: int = Field(default=50, alias="SHOUTSYNC_NOTIFICATION_LIMIT")
    log_level: str = Field(default="INFO", alias="SHOUTSYNC_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> logging.Logger:
    """Apply the configured level to the package logger and return it."""

    resolved = settings or get_settings()
    logger = logging.getLogger("shoutsync")
    logger.setLevel(resolved.log_level.upper())
    return logger


__all__ = ["Settings", "get_settings", "configure_logging"]
