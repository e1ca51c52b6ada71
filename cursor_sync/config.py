"""Settings loaded from environment variables (prefix ``CURSOR_SYNC_``) or ``.env``."""

import logging
from datetime import date, timedelta
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Upstream API
    api_key: str = ""
    base_url: Optional[str] = None  # None = https://api.cursor.com
    request_timeout: int = 30
    retry_attempts: int = 3

    # Storage
    database_url: str = "sqlite+aiosqlite:///cursor_sync.db"

    # Trigger endpoints
    cron_secret: Optional[str] = None

    # Sync windows
    inception_date: date = date(2025, 6, 16)
    incremental_default_days: int = 7
    max_window_days: int = 30
    chunk_delay_seconds: float = 3.0

    # Lock and rate limits
    lock_ttl_seconds: int = 600
    min_sync_interval_seconds: int = 3000  # scheduled runs: 50 minutes
    refresh_interval_seconds: int = 300  # manual refresh: 5 minutes

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CURSOR_SYNC_", extra="ignore")

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(seconds=self.lock_ttl_seconds)

    @property
    def min_sync_interval(self) -> timedelta:
        return timedelta(seconds=self.min_sync_interval_seconds)

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(seconds=self.refresh_interval_seconds)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
