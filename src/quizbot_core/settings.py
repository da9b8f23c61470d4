from __future__ import annotations

from typing import Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from quizbot_core.circuit_breaker import CircuitBreakerConfig
from quizbot_core.logging import LogLevel

Weekday = Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class BotSettings(BaseSettings):
    """Runtime settings for the trivia bot, read from ``QUIZBOT_*`` variables."""

    model_config = prefixed_settings_config("QUIZBOT_")

    gemini_api_key: str
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    target_channel_ids: Annotated[tuple[str, ...], NoDecode]
    database_path: str = "quizbot.sqlite3"
    schedule_timezone: str = "America/New_York"
    daily_post_hour: int = 6
    daily_post_minute: int = 0
    weekly_summary_day: Weekday = "sun"
    weekly_summary_hour: int = 21
    startup_settle_seconds: float = 5.0
    queue_max_per_key: int = 5
    queue_ttl_seconds: float = 180.0
    queue_drain_interval_seconds: float = 4.0
    breaker_failure_threshold: int = 5
    breaker_window_seconds: float = 120.0
    breaker_open_seconds: float = 120.0
    user_cooldown_seconds: float = 4.0
    overload_cooldown_seconds: float = 60.0
    creator_username: str | None = None
    log_level: LogLevel = "INFO"

    @field_validator("target_channel_ids", mode="before")
    @classmethod
    def _split_channel_ids(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, (list, tuple)):
            ids = tuple(str(item).strip() for item in value if str(item).strip())
            if not ids:
                raise ValueError("target_channel_ids must list at least one channel")
            return ids
        return value

    @field_validator("gemini_api_key", "gemini_model", mode="before")
    @classmethod
    def _validate_required_string(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be non-empty")
        return normalized

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("weekly_summary_day", mode="before")
    @classmethod
    def _normalize_weekday(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()[:3]
        return value

    @field_validator("schedule_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(f"unknown schedule_timezone: {value}") from error
        return value

    @model_validator(mode="after")
    def _validate_bot_settings(self) -> BotSettings:
        for name in ("daily_post_hour", "weekly_summary_hour"):
            if not 0 <= getattr(self, name) <= 23:
                raise ValueError(f"{name} must be between 0 and 23")
        if not 0 <= self.daily_post_minute <= 59:
            raise ValueError("daily_post_minute must be between 0 and 59")
        if self.queue_max_per_key < 1:
            raise ValueError("queue_max_per_key must be >= 1")
        if self.breaker_failure_threshold < 1:
            raise ValueError("breaker_failure_threshold must be >= 1")
        for name in (
            "queue_ttl_seconds",
            "queue_drain_interval_seconds",
            "breaker_window_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.startup_settle_seconds < 0:
            raise ValueError("startup_settle_seconds must be >= 0")
        return self

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.schedule_timezone)

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the shared circuit breaker configuration."""
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            window_seconds=self.breaker_window_seconds,
            open_seconds=self.breaker_open_seconds,
        )
