"""Application settings and configuration.

This module defines all configuration options for the messaging core.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Messaging settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Database configuration
    database_url: str = Field(default="sqlite:///./messaging.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Reconciliation timing
    poll_refresh_interval_seconds: float = Field(
        default=5.0,
        alias="POLL_REFRESH_INTERVAL_SECONDS",
    )
    poll_reconcile_delay_seconds: float = Field(
        default=1.0,
        alias="POLL_RECONCILE_DELAY_SECONDS",
    )

    # Recipient search
    recipient_search_min_chars: int = Field(default=2, alias="RECIPIENT_SEARCH_MIN_CHARS")
    recipient_search_limit: int = Field(default=50, alias="RECIPIENT_SEARCH_LIMIT")

    # Object storage for attachments
    storage_base_url: str | None = Field(default=None, alias="STORAGE_BASE_URL")
    storage_bucket: str = Field(default="messenger", alias="STORAGE_BUCKET")
    storage_api_key: str | None = Field(default=None, alias="STORAGE_API_KEY")
    storage_cache_control: str = Field(default="3153600000", alias="STORAGE_CACHE_CONTROL")
    storage_timeout_seconds: float = Field(default=30.0, alias="STORAGE_TIMEOUT_SECONDS")

    # Identity tokens
    jwt_secret: str = Field(default="change-me", alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_audience: str | None = Field(default=None, alias="JWT_AUDIENCE")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def storage_enabled(self) -> bool:
        """Return True when a remote object store is configured."""
        return bool(self.storage_base_url)


settings = Settings()
