"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from hazardwatch.core.config import settings
    print(settings.FANOUT_BATCH_SIZE)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Road Hazard Alerts"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True

    # ── Live matching (per-watcher) ──
    ALERT_RADIUS_KM: float = 5.0
    MATCHER_DEDUPE_WINDOW: int = 10_000  # event ids remembered per session
    FEED_RESUBSCRIBE_RETRIES: int = 3
    FEED_RESUBSCRIBE_BACKOFF_MS: int = 1_000

    # ── Fan-out dispatch ──
    FANOUT_RADIUS_KM: float = 5.0
    FANOUT_BATCH_SIZE: int = 500  # FCM multicast limit
    FANOUT_RETRY_COUNT: int = 2
    FANOUT_RETRY_BACKOFF_MS: int = 500
    PUSH_SEND_TIMEOUT_SECONDS: float = 10.0
    DISPATCH_DEDUPE_WINDOW: int = 10_000
    FAILED_DISPATCH_HISTORY: int = 1_000

    NOTIFICATION_TITLE: str = "Hazard detected in your area"
    NOTIFICATION_BODY: str = (
        "A road hazard was reported near your location. Drive safe!"
    )

    # ── Subscriber directory ──
    DIRECTORY_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SUBSCRIBER_PREFIX: str = "subscriber:"

    @field_validator("ALERT_RADIUS_KM", "FANOUT_RADIUS_KM")
    @classmethod
    def _positive_radius(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"Radius must be positive, got {value}")
        return value

    @field_validator(
        "FANOUT_BATCH_SIZE", "MATCHER_DEDUPE_WINDOW",
        "DISPATCH_DEDUPE_WINDOW", "FAILED_DISPATCH_HISTORY",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError(f"Must be at least 1, got {value}")
        return value

    @field_validator(
        "FANOUT_RETRY_COUNT", "FANOUT_RETRY_BACKOFF_MS",
        "FEED_RESUBSCRIBE_RETRIES", "FEED_RESUBSCRIBE_BACKOFF_MS",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError(f"Must not be negative, got {value}")
        return value

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
