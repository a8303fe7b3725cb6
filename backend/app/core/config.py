"""
Application configuration using Pydantic Settings.
Loads environment variables from .env file.
"""

from functools import lru_cache
from typing import List
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when the configuration is invalid at startup."""
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    app_env: str = Field(default="development", alias="APP_ENV")
    app_debug: bool = Field(default=True, alias="APP_DEBUG")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")

    # -------------------------------------------------------------------------
    # CORS
    # -------------------------------------------------------------------------
    cors_origins: str = Field(
        default="http://localhost:5173,http://localhost:3000",
        alias="CORS_ORIGINS",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    # -------------------------------------------------------------------------
    # PostgreSQL
    # -------------------------------------------------------------------------
    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")
    postgres_db: str = Field(default="crm_sync", alias="POSTGRES_DB")
    postgres_user: str = Field(default="postgres", alias="POSTGRES_USER")
    postgres_password: str = Field(default="postgres", alias="POSTGRES_PASSWORD")
    database_url: str | None = Field(default=None, alias="DATABASE_URL")

    @property
    def async_database_url(self) -> str:
        """Build async database URL for SQLAlchemy."""
        if self.database_url:
            # Ensure we use the async driver
            url = self.database_url
            if url.startswith("postgresql://"):
                url = url.replace("postgresql://", "postgresql+psycopg://", 1)
            return url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # -------------------------------------------------------------------------
    # Pipedrive API
    # All durations are milliseconds.
    # -------------------------------------------------------------------------
    pipedrive_base_url: str = Field(
        default="https://api.pipedrive.com",
        alias="PIPEDRIVE_BASE_URL",
    )
    pipedrive_api_version: str = Field(default="v1", alias="PIPEDRIVE_API_VERSION")
    pipedrive_timeout: int = Field(default=30000, alias="PIPEDRIVE_TIMEOUT")
    pipedrive_max_retries: int = Field(default=3, alias="PIPEDRIVE_MAX_RETRIES")
    pipedrive_retry_delay: int = Field(default=1000, alias="PIPEDRIVE_RETRY_DELAY")
    pipedrive_rate_limit_delay: int = Field(default=60000, alias="PIPEDRIVE_RATE_LIMIT_DELAY")

    # Field length limits applied before a payload is sent
    pipedrive_max_name_length: int = Field(default=255, alias="PIPEDRIVE_MAX_NAME_LENGTH")
    pipedrive_max_email_length: int = Field(default=255, alias="PIPEDRIVE_MAX_EMAIL_LENGTH")
    pipedrive_max_phone_length: int = Field(default=50, alias="PIPEDRIVE_MAX_PHONE_LENGTH")
    pipedrive_max_org_name_length: int = Field(default=255, alias="PIPEDRIVE_MAX_ORG_NAME_LENGTH")
    pipedrive_max_subject_length: int = Field(default=255, alias="PIPEDRIVE_MAX_SUBJECT_LENGTH")
    pipedrive_max_note_length: int = Field(default=1000, alias="PIPEDRIVE_MAX_NOTE_LENGTH")

    # Feature flags
    pipedrive_enable_retries: bool = Field(default=True, alias="PIPEDRIVE_ENABLE_RETRIES")
    pipedrive_enable_rate_limiting: bool = Field(
        default=True,
        alias="PIPEDRIVE_ENABLE_RATE_LIMITING",
    )
    pipedrive_enable_data_sanitization: bool = Field(
        default=True,
        alias="PIPEDRIVE_ENABLE_DATA_SANITIZATION",
    )
    pipedrive_enable_detailed_logging: bool = Field(
        default=False,
        alias="PIPEDRIVE_ENABLE_DETAILED_LOGGING",
    )

    @property
    def pipedrive_api_url(self) -> str:
        """Versioned API root, e.g. https://api.pipedrive.com/v1"""
        return f"{self.pipedrive_base_url.rstrip('/')}/{self.pipedrive_api_version}"

    # -------------------------------------------------------------------------
    # Sync Engine
    # -------------------------------------------------------------------------
    sync_batch_size: int = Field(default=50, alias="SYNC_BATCH_SIZE")
    sync_timeout_ms: int = Field(default=300000, alias="SYNC_TIMEOUT_MS")
    sync_batch_timeout_ms: int = Field(default=30000, alias="SYNC_BATCH_TIMEOUT_MS")
    sync_max_batch_timeout_ms: int = Field(default=120000, alias="SYNC_MAX_BATCH_TIMEOUT_MS")
    sync_progressive_timeout: bool = Field(default=True, alias="SYNC_PROGRESSIVE_TIMEOUT")
    sync_update_chunk_size: int = Field(default=10, alias="SYNC_UPDATE_CHUNK_SIZE")
    sync_update_pause_ms: int = Field(default=1000, alias="SYNC_UPDATE_PAUSE_MS")
    sync_conflict_retry_delay_ms: int = Field(
        default=1000,
        alias="SYNC_CONFLICT_RETRY_DELAY_MS",
        description="Base delay before retrying an update rejected as a conflict",
    )


def validate_crm_settings(settings: Settings) -> List[str]:
    """
    Check the Pipedrive and sync settings for values that would break a run.

    Returns:
        List of human-readable problems (empty if the configuration is valid)
    """
    # Circular import: app.services.crm_sync imports this module
    from app.services.crm_sync.timeout_guard import TimeoutConfig, validate_timeout_config

    errors: List[str] = []

    parsed = urlparse(settings.pipedrive_base_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        errors.append(f"Invalid base URL: {settings.pipedrive_base_url}")

    if settings.pipedrive_timeout < 1000:
        errors.append("Timeout must be at least 1000ms")

    if settings.pipedrive_max_retries < 0:
        errors.append("Max retries must be non-negative")

    if settings.pipedrive_retry_delay < 100:
        errors.append("Retry delay must be at least 100ms")

    length_limits = {
        "name": settings.pipedrive_max_name_length,
        "email": settings.pipedrive_max_email_length,
        "phone": settings.pipedrive_max_phone_length,
        "org name": settings.pipedrive_max_org_name_length,
        "subject": settings.pipedrive_max_subject_length,
        "note": settings.pipedrive_max_note_length,
    }
    for field_name, limit in length_limits.items():
        if limit < 1:
            errors.append(f"Max {field_name} length must be positive")

    if settings.sync_batch_size < 1:
        errors.append("Sync batch size must be positive")

    errors.extend(
        validate_timeout_config(
            TimeoutConfig(
                sync_timeout_ms=settings.sync_timeout_ms,
                batch_timeout_ms=settings.sync_batch_timeout_ms,
                max_batch_timeout_ms=settings.sync_max_batch_timeout_ms,
                progressive_timeout_enabled=settings.sync_progressive_timeout,
            )
        )
    )

    return errors


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Note: Settings are cached! If you change .env, restart the server.
    """
    return Settings()

def clear_settings_cache() -> None:
    """Clear the settings cache. Call this if you need to reload settings."""
    get_settings.cache_clear()
