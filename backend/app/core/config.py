"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.LOCATION_TIMEOUT_SECONDS)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator, model_validator
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
    APP_NAME: str = "Safety Companion"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── SOS message ──
    SOS_MESSAGE: str = (
        "I need help. This is an emergency. "
        "My current location is being shared with you."
    )

    # ── Location policy ──
    LOCATION_TIMEOUT_SECONDS: float = 5.0    # single-shot read deadline
    LOCATION_MAX_AGE_SECONDS: float = 10.0   # cached fix reuse window
    LOCATION_REFRESH_SECONDS: float = 30.0   # refresh interval while active

    # ── Simulated position source ──
    # Unset → the simulated source reports POSITION_UNAVAILABLE
    SIMULATED_LATITUDE: Optional[float] = None
    SIMULATED_LONGITUDE: Optional[float] = None

    # ── Transport ──
    SMS_PROVIDER: str = "simulation"    # simulation | disabled
    VOICE_PROVIDER: str = "simulation"  # simulation | disabled

    @field_validator(
        "LOCATION_TIMEOUT_SECONDS",
        "LOCATION_MAX_AGE_SECONDS",
        "LOCATION_REFRESH_SECONDS",
    )
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0 seconds")
        return v

    @model_validator(mode="after")
    def _paired_coordinates(self) -> "Settings":
        lat, lng = self.SIMULATED_LATITUDE, self.SIMULATED_LONGITUDE
        if (lat is None) != (lng is None):
            raise ValueError("SIMULATED_LATITUDE and SIMULATED_LONGITUDE must be set together")
        if lat is not None and not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise ValueError(f"Simulated position out of range: {lat}, {lng}")
        return self

    @property
    def has_simulated_position(self) -> bool:
        return self.SIMULATED_LATITUDE is not None

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
