"""
Configuration management for Iudex.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Every field can be overridden with an ``IUDEX_``-prefixed environment
    variable, e.g. ``IUDEX_DATABASE_URL`` or ``IUDEX_BATCH_SIZE``.
    """

    model_config = SettingsConfigDict(
        env_prefix="IUDEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Iudex")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    # Database
    database_url: str = Field(default="sqlite:///./iudex.db")
    pool_size: int = Field(default=10, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    pool_timeout: float = Field(
        default=30.0, description="Seconds to wait for a pooled connection"
    )
    statement_timeout_ms: int = Field(
        default=30000,
        ge=0,
        description="Per-attempt statement timeout (PostgreSQL only, 0 disables)",
    )

    # Batching
    batch_size: int = Field(default=100, ge=1)
    enable_batching: bool = Field(default=True)
    throw_on_error: bool = Field(default=False)

    # Retry
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=0.1, description="Seconds")
    retry_max_delay: float = Field(default=2.0, description="Seconds")
    retry_on_constraint_violation: bool = Field(default=True)
    retry_on_deadlock: bool = Field(default=True)
    long_transaction_threshold_ms: int = Field(default=1000)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
