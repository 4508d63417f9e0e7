from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )

    db_path: Path = Field(
        default=Path("data/alert-intake.db"), validation_alias="DB_PATH"
    )
    sources_dir: Path = Field(default=Path("sources"), validation_alias="SOURCES_DIR")

    user_agent: str = Field(default="alert-intake/0.1", validation_alias="USER_AGENT")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    fetch_timeout_seconds: float = Field(
        default=20.0, validation_alias="FETCH_TIMEOUT_SECONDS"
    )
    fetch_concurrency: int = Field(default=4, validation_alias="FETCH_CONCURRENCY")
    min_poll_interval_seconds: int = Field(
        default=300, validation_alias="MIN_POLL_INTERVAL_SECONDS"
    )

    queue_batch_size: int = Field(default=50, validation_alias="QUEUE_BATCH_SIZE")
    queue_stale_minutes: int = Field(default=10, validation_alias="QUEUE_STALE_MINUTES")
    queue_max_attempts: int = Field(default=3, validation_alias="QUEUE_MAX_ATTEMPTS")

    dedup_window_hours: int = Field(default=24, validation_alias="DEDUP_WINDOW_HOURS")
    dedup_title_prefix: int = Field(default=30, validation_alias="DEDUP_TITLE_PREFIX")

    health_window: int = Field(default=10, validation_alias="HEALTH_WINDOW")
    correlation_threshold: float = Field(
        default=0.7, validation_alias="CORRELATION_THRESHOLD"
    )

    scheduler_enabled: bool = Field(default=False, validation_alias="SCHEDULER_ENABLED")
    scheduler_tick_seconds: int = Field(
        default=60, validation_alias="SCHEDULER_TICK_SECONDS"
    )
