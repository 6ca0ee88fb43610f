"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Processor webhook verification (secrets live in processor_configs per merchant)
    stripe_signature_tolerance: int = Field(
        default=300, description="Max age of a Stripe signature timestamp (seconds)"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str | None = Field(
        default=None, description="Redis URL for outbox wake-up notifications (optional)"
    )
    outbox_wakeup_key: str = Field(
        default="gateway:outbox:wakeup", description="Redis list used to wake delivery workers"
    )

    # Workflow orchestrator
    temporal_address: str = Field(
        default="localhost:7233", description="Temporal frontend address (host:port)"
    )
    temporal_namespace: str = Field(default="loop", description="Temporal namespace")
    workflow_timeout_seconds: float = Field(
        default=5.0, description="Bound on every orchestrator RPC (seconds)"
    )
    payment_workflow_name: str = Field(default="PaymentWorkflow", description="Payment workflow type")
    payment_task_queue: str = Field(default="payment-queue", description="Payment workflow task queue")
    payment_signal_name: str = Field(
        default="payment_completion", description="Signal delivered to a waiting payment workflow"
    )

    # Reconciliation
    reconciliation_db_timeout_seconds: float = Field(
        default=5.0, description="Bound on one reconciliation unit of work (seconds)"
    )
    persistence_retry_attempts: int = Field(
        default=3, description="Attempts for a reconciliation unit before answering 5xx"
    )
    persistence_retry_base_delay: float = Field(
        default=0.2, description="Base delay for persistence retry backoff (seconds)"
    )
    persistence_retry_max_delay: float = Field(
        default=2.0, description="Ceiling for persistence retry backoff (seconds)"
    )

    # Webhook delivery
    webhook_max_attempts: int = Field(default=8, description="Delivery attempts before exhausted")
    webhook_backoff_base_seconds: float = Field(
        default=30.0, description="Base delay for delivery retry backoff (seconds)"
    )
    webhook_backoff_max_seconds: float = Field(
        default=6 * 3600.0, description="Ceiling for delivery retry backoff (seconds)"
    )
    webhook_request_timeout_seconds: float = Field(
        default=10.0, description="Merchant endpoint response timeout (seconds)"
    )
    webhook_batch_size: int = Field(default=50, description="Outbox entries claimed per batch")
    webhook_poll_interval_seconds: float = Field(
        default=1.0, description="Delivery scheduler polling interval (seconds)"
    )
    webhook_claim_lease_seconds: float = Field(
        default=120.0, description="Age after which an in-flight claim may be taken over"
    )

    # Application Configuration
    app_name: str = Field(default="payment-gateway", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    merchant_id_header: str = Field(
        default="X-Merchant-ID", description="Header carrying the authenticated merchant id"
    )

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

    @field_validator("workflow_timeout_seconds", "reconciliation_db_timeout_seconds")
    @classmethod
    def validate_bounded_wait(cls, v: float) -> float:
        """Orchestrator and database waits must stay small and positive."""
        if v <= 0 or v > 5.0:
            raise ValueError("Bounded waits must be within (0, 5] seconds")
        return v

    @field_validator("webhook_max_attempts", "persistence_retry_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Validate retry attempt counts."""
        if v < 1:
            raise ValueError("Attempt counts must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_claim_lease(self) -> "Settings":
        """A claim must outlive the delivery request it covers."""
        if self.webhook_claim_lease_seconds <= self.webhook_request_timeout_seconds:
            raise ValueError(
                "webhook_claim_lease_seconds must be greater than "
                "webhook_request_timeout_seconds"
            )
        return self

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
