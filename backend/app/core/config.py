"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.DATABASE_URL)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

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
    APP_NAME: str = "AlertRun Escalation Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Persistence ──
    STORE_BACKEND: str = "memory"  # memory | sql
    DATABASE_URL: str = "sqlite:///alertrun.db"
    DATABASE_ECHO: bool = False  # log SQL queries

    # ── Identity ──
    IDENTITY_HEADER: str = "X-User-Id"

    # ── Severity policy ──
    SEVERITY_WEIGHT_PRESET: str = "reporter_dominant"  # reporter_dominant | balanced
    SEVERITY_TAP_WEIGHT: Optional[float] = None        # explicit override (all three or none)
    SEVERITY_FREQ_WEIGHT: Optional[float] = None
    SEVERITY_REPORTER_WEIGHT: Optional[float] = None

    # ── Tap aggregation ──
    TAP_WINDOW_SECONDS: float = 10.0         # trailing window for tap frequency
    RECENT_TAP_WINDOW_SECONDS: float = 60.0  # "recent taps" on the detail view

    # ── Spatial ──
    INITIAL_NOTIFICATION_RADIUS_KM: float = 3.0
    HISTORY_RADIUS_KM: float = 50.0
    HISTORY_WINDOW_DAYS: int = 7
    NEARBY_RADIUS_KM: float = 10.0
    REJECT_NULL_ISLAND: bool = False  # treat (0, 0) as a missing location

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
