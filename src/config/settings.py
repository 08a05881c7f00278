from datetime import date
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "TutorLink API"
    APP_VERSION: str = "0.4.2"
    APP_ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./tutorlink.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis (event channel + celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"
    EVENTS_CHANNEL: str = "tutorlink.allocation-events"

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:8080",
    ]

    # Collaborators
    NOTIFICATION_SERVICE_URL: str = ""  # Empty = log only
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Trainer assignment
    MAX_SEQUENTIAL_DISTANCE_KM: float = 5.0
    TRAINER_CAPACITY_FLOOR: int = 4
    CANDIDATE_LIMIT: int = 10

    # Session scheduling
    DEFAULT_SESSION_COUNT: int = 30
    DEFAULT_TIME_SLOT: str = "4:00 PM"
    SESSION_DURATION_MINUTES: int = 40
    SUNDAY_ONLY_SESSION_DURATION_MINUTES: int = 80
    # Sundays inside this window are skipped for daily courses.
    # Both unset = Jan 1 through Jul 31 of the current year.
    SUNDAY_HOLIDAY_START: date | None = None
    SUNDAY_HOLIDAY_END: date | None = None

    # Outbox and maintenance jobs
    EFFECT_MAX_ATTEMPTS: int = 5
    EFFECT_RETRY_INTERVAL_MINUTES: int = 10
    SESSION_BACKFILL_HOUR: int = 6
    TIMEZONE: str = "Asia/Kolkata"

    # Observability (GlitchTip/Sentry)
    GLITCHTIP_DSN: str = ""
    GLITCHTIP_TRACES_SAMPLE_RATE: float = 0.2
    GLITCHTIP_PROFILES_SAMPLE_RATE: float = 0.1

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
