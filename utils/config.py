"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Settings are frozen and read once at startup; every component receives the
values it needs explicitly instead of importing a global.

Usage:
    from utils.config import get_settings

    settings = get_settings()
    store = RecordStore(settings.STORE_PATH)
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.schemas import IdentityConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        frozen=True,
        extra="ignore",
    )

    # Upstream timeline API
    TIMELINE_API_BASE: str = Field(default="https://api.twitter.com/2/")
    TIMELINE_API_TOKEN: str = Field(default="")
    TIMELINE_PAGE_SIZE: int = Field(default=100, ge=5, le=100)
    API_TIMEOUT: int = Field(default=30)
    FETCH_MAX_RETRIES: int = Field(default=3, ge=1)
    FETCH_RETRY_BACKOFF: float = Field(default=1.0, ge=0)

    # Downstream Telegram bot API
    TELEGRAM_API_BASE: str = Field(default="https://api.telegram.org")
    TELEGRAM_BOT_TOKEN: str = Field(default="")
    DELIVERY_DELAY_SECONDS: float = Field(default=3.0, ge=0)
    DELIVERY_CHECKPOINT_INTERVAL: int = Field(default=50, ge=0)

    # Storage
    STORE_PATH: str = Field(default="/app/data/relay.db")

    # Scheduler Configuration
    SYNC_SCHEDULE_CRON: str = Field(default="*/15 * * * *")
    RUN_ONCE: bool = Field(default=False)
    WORKER_CONCURRENCY: int = Field(default=4, ge=1)

    # Identities (JSON list in the environment)
    IDENTITIES: list[IdentityConfig] = Field(default_factory=list)

    # Redis Configuration (empty URL disables relay events)
    REDIS_URL: str = Field(default="")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    REDIS_CHANNEL_EVENTS: str = Field(default="relay.events")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="timeline-relay")
    APP_VERSION: str = Field(default="0.1.0")

    @field_validator("IDENTITIES")
    @classmethod
    def validate_unique_names(cls, v: list[IdentityConfig]) -> list[IdentityConfig]:
        """Reject two identities sharing one name (they would share a partition)."""
        seen: set[str] = set()
        for identity in v:
            if identity.name in seen:
                raise ValueError(f"duplicate identity name: {identity.name}")
            seen.add(identity.name)
        return v

    @property
    def events_enabled(self) -> bool:
        return bool(self.REDIS_URL)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()
