from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    store_path: str = Field(default="state/engine.json", alias="STORE_PATH")
    slack_webhook_url: str | None = Field(default=None, alias="SLACK_WEBHOOK_URL")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", alias="LOG_FORMAT")

    sweep_interval_seconds: int = Field(default=60, alias="SWEEP_INTERVAL_SECONDS")
    expression_timeout_seconds: float = Field(default=1.0, alias="EXPRESSION_TIMEOUT_SECONDS")
    event_max_attempts: int = Field(default=5, alias="EVENT_MAX_ATTEMPTS")
    event_retry_plan_seconds: str = Field(default="1,5,15", alias="EVENT_RETRY_PLAN_SECONDS")
    server_offline_after_minutes: int = Field(default=2, alias="SERVER_OFFLINE_AFTER_MINUTES")

    retention_days: int | None = Field(default=None, alias="RETENTION_DAYS")
    retention_interval_hours: int = Field(default=24, alias="RETENTION_INTERVAL_HOURS")

    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")

    @model_validator(mode="after")
    def validate_intervals(self) -> Settings:
        if self.sweep_interval_seconds <= 0:
            raise ValueError("SWEEP_INTERVAL_SECONDS must be positive")
        if self.expression_timeout_seconds <= 0:
            raise ValueError("EXPRESSION_TIMEOUT_SECONDS must be positive")
        if self.event_max_attempts < 1:
            raise ValueError("EVENT_MAX_ATTEMPTS must be at least 1")
        if any(delay < 0 for delay in self.event_retry_seconds):
            raise ValueError("EVENT_RETRY_PLAN_SECONDS must not contain negative delays")
        if self.retention_days is not None and self.retention_days < 1:
            raise ValueError("RETENTION_DAYS must be at least 1 when set")
        if self.retention_interval_hours <= 0:
            raise ValueError("RETENTION_INTERVAL_HOURS must be positive")
        return self

    @property
    def event_retry_seconds(self) -> list[float]:
        values = [chunk.strip() for chunk in self.event_retry_plan_seconds.split(",") if chunk.strip()]
        return [float(item) for item in values]

    @property
    def slack_enabled(self) -> bool:
        return bool(self.slack_webhook_url and self.slack_webhook_url.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
