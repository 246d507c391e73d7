"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./sandbox.db",
        description="Async SQLAlchemy connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (optional, enables the velocity fraud rule)
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")

    # Application Configuration
    app_name: str = Field(default="sandbox-gateway", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)",
    )

    # Checkout
    checkout_base_url: str = Field(
        default="http://localhost:3000", description="Base URL checkout links are built on"
    )
    session_ttl_minutes: int = Field(default=60, description="Expiry horizon for checkout sessions")
    payment_link_ttl_hours: int = Field(default=24, description="Expiry horizon for shareable links")
    simulated_success_rate: float = Field(
        default=0.9, ge=0.0, le=1.0, description="Probability a simulated charge succeeds"
    )
    default_currency: str = Field(default="USD", description="Currency used when none is given")

    # Fraud Gate
    fraud_enabled: bool = Field(default=True, description="Consult the fraud gate before charging")
    fraud_block_threshold: int = Field(default=70, description="Score at or above which to block")
    fraud_review_threshold: int = Field(default=50, description="Score at or above which to review")
    fraud_flag_threshold: int = Field(default=30, description="Score at or above which to flag")
    fraud_timeout_seconds: float = Field(
        default=2.0, description="Upper bound on risk analysis before failing open"
    )

    # Renewal Scheduler
    scheduler_enabled: bool = Field(default=True, description="Start the scheduler with the API")
    scheduler_interval_seconds: float = Field(default=60.0, description="Scheduler tick interval")
    reminder_lookahead_days: int = Field(default=3, description="Upcoming renewal reminder window")

    # Webhooks
    webhook_timeout_seconds: float = Field(default=30.0, description="Webhook POST timeout")
    webhook_max_retries: int = Field(default=3, description="Default re-attempts per delivery")
    webhook_retry_delay_ms: int = Field(default=5000, description="Default base retry delay")
    webhook_backoff_multiplier: float = Field(default=2.0, description="Default backoff multiplier")
    webhook_retry_enabled: bool = Field(default=True, description="Run the retry queue with the API")
    webhook_retry_poll_seconds: float = Field(default=5.0, description="Retry queue poll interval")
    webhook_retry_batch_size: int = Field(default=50, description="Deliveries retried per batch")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("fraud_review_threshold")
    @classmethod
    def validate_review_threshold(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("fraud_review_threshold must be between 0 and 100")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
