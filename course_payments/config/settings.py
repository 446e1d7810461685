"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./course_payments.db",
        description="Async SQLAlchemy connection URL (postgresql+asyncpg://... in production)",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed webhook ids are remembered"
    )

    # Payment Gateway
    gateway_api_base_url: str = Field(
        default="https://api.mercadopago.com", description="Gateway REST API base URL"
    )
    gateway_access_token: str = Field(default="", description="Gateway API access token")
    gateway_webhook_secret: str = Field(
        default="", description="Webhook signing secret (signature check skipped when empty)"
    )
    gateway_timeout_seconds: float = Field(default=10.0, description="Gateway API timeout")

    # Reconciliation
    order_lookup_retry_delay_seconds: float = Field(
        default=0.5, description="Fixed delay before the single order lookup retry"
    )
    order_number_prefix: str = Field(default="PI", description="Human-readable order number prefix")
    pending_order_ttl_hours: int = Field(
        default=48, description="Age after which unverified manual orders expire"
    )
    manual_payment_methods: str = Field(
        default="yape,plin", description="Payment methods confirmed by buyer-submitted receipts"
    )

    # Manual confirmation channel
    transaction_id_max_length: int = Field(
        default=64, description="Maximum length of a buyer-supplied transaction id"
    )
    validation_api_key: str = Field(
        default="", description="Shared secret for receipt validation verdict callbacks"
    )

    # Status observer
    status_poll_interval_seconds: float = Field(default=2.0, description="Status poll interval")
    status_poll_max_wait_seconds: float = Field(
        default=600.0, description="Maximum time a buyer-facing status watch waits"
    )

    # Notifications
    notification_url: str = Field(
        default="", description="Email dispatcher endpoint (log only when empty)"
    )
    notification_timeout_seconds: float = Field(default=5.0, description="Notification timeout")

    # Outbox
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox polling interval")

    # Scheduler
    expiry_job_interval_seconds: int = Field(
        default=3600, description="Interval of the pending order expiry job"
    )
    subscription_expiry_hour: int = Field(
        default=1, ge=0, le=23, description="Hour of day the subscription expiry job runs"
    )
    scheduler_timezone: str = Field(default="America/Lima", description="Scheduler timezone")

    # Application Configuration
    app_name: str = Field(default="course-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8080",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="API key header name")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("order_number_prefix")
    @classmethod
    def validate_order_number_prefix(cls, v: str) -> str:
        """Order numbers use an uppercase alphabetic prefix."""
        if not v.isalpha():
            raise ValueError("Order number prefix must be alphabetic")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_manual_payment_methods(self) -> List[str]:
        """Parse manual payment methods from comma-separated string."""
        return [m.strip().lower() for m in self.manual_payment_methods.split(",") if m.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
