"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Persistence
    DATABASE_URL: Optional[str] = None  # read directly by adreport.database

    # Redis Configuration (per-client live fetch rate limiting + ARQ)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Freshness resolution
    # WHAT: Cache TTL and the time budgets for every blocking call
    # WHY: Upstream platform APIs are observed to hang; nothing is awaited unbounded
    CACHE_TTL_HOURS: float = 3.0
    LIVE_FETCH_TIMEOUT_SECONDS: float = 30.0
    STORE_TIMEOUT_SECONDS: float = 5.0
    BACKGROUND_REFRESH_COOLDOWN_SECONDS: float = 300.0  # 5 minutes per cache key
    ALL_TIME_MONTHS: int = 37  # Meta historical data retention limit
    REPORT_TIMEZONE: str = "UTC"

    # Meta Marketing API (system user token)
    META_ACCESS_TOKEN: Optional[str] = None
    META_APP_ID: Optional[str] = None
    META_APP_SECRET: Optional[str] = None

    # Observability
    SENTRY_DSN: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
