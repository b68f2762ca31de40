"""Application configuration from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./utility_billing.db",
        description="SQLAlchemy async connection string",
    )
    database_echo: bool = Field(default=False, description="Log SQL queries")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: str = Field(default="logs/server.log", description="Log file path")
    log_levels: dict[str, str] = Field(
        default_factory=dict,
        description='Per-logger levels, e.g. {"utility_billing.services.penalty_service": "DEBUG"}',
    )

    # Mutation retries
    store_retry_attempts: int = Field(
        default=4, description="Attempts for a mutation when the store is unavailable"
    )
    store_retry_wait_seconds: float = Field(
        default=0.2, description="Initial backoff between store retries"
    )
    concurrency_retry_attempts: int = Field(
        default=3, description="Attempts for a mutation that lost an optimistic version check"
    )

    # API
    api_title: str = Field(default="Utility Billing API", description="API title")
    api_version: str = Field(default="0.1.0", description="API version")


# Global settings instance
settings = Settings()
