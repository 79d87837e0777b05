from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Synchronization settings loaded from environment variables.

    Every field can be overridden with a ``CHATSYNC_``-prefixed variable
    (e.g. ``CHATSYNC_POLLING_INTERVAL_MS=2000``). A ``ConversationSync`` is
    always constructed with an explicit ``Settings`` instance, so tests and
    embedding applications can also build one directly with keyword arguments.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_prefix="CHATSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Endpoints
    API_BASE_URL: str = "/api/hazo_chat"
    PROFILES_URL: str = "/api/hazo_auth/profiles"
    REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    # Realtime behaviour
    REALTIME_MODE: Literal["polling", "manual"] = "polling"
    POLLING_INTERVAL_MS: int = Field(default=5000, gt=0)
    MAX_POLLING_DELAY_MS: int = Field(default=30000, gt=0)
    MAX_RETRY_ATTEMPTS: int = Field(default=3, ge=1)

    # Pagination
    MESSAGES_PER_PAGE: int = Field(default=20, ge=1, le=100)
    POLL_PAGE_LIMIT: int = Field(default=50, ge=1, le=100)

    # Profile cache
    PROFILE_CACHE_MAX_SIZE: int = Field(default=200, ge=1)
    PROFILE_CACHE_TTL_SECONDS: float = Field(default=1800.0, gt=0)

    # Logging
    LOG_LEVEL: str = "INFO"

    @model_validator(mode="after")
    def check_delay_bounds(self) -> "Settings":
        """The backoff cap can never be below the base interval."""
        if self.MAX_POLLING_DELAY_MS < self.POLLING_INTERVAL_MS:
            raise ValueError("MAX_POLLING_DELAY_MS must be >= POLLING_INTERVAL_MS")
        return self


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every construction.
    """
    return Settings()
