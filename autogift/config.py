"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Auto-Gift Execution API"
    api_version: str = "0.1.0"
    api_description: str = "Rule execution and approval state machine for recurring gifts"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "autogift-api"
    deployment_environment: str = "production"

    # Retry policy - attempts at +10min, +1h, +6h, +24h
    retry_backoff_seconds: list[int] = [600, 3600, 21600, 86400]
    max_order_attempts: int = 3

    # Orchestration
    order_placement_timeout_seconds: float = 30.0
    order_placement_lease_seconds: int = 300
    processing_stale_after_seconds: int = 900
    sweep_batch_size: int = 10

    # Spending limits per user, in minor units (unset = unlimited)
    monthly_spending_limit_minor: int | None = None
    annual_spending_limit_minor: int | None = None

    # Trigger evaluation
    trigger_window_days: int = 7

    # Payment health
    expiring_soon_days: int = 30

    # Defaults seeded into new rules
    default_budget_limit_minor: int = 5000  # $50.00
    default_notification_days: list[int] = [7, 3, 1]
    default_auto_approve: bool = False
    default_selection_source: str = "both"
    default_currency: str = "USD"

    # External providers
    product_search_api_url: str = ""
    recipient_api_url: str = ""
    fulfillment_api_url: str = ""
    fulfillment_api_key: str = ""
    notification_webhook_url: str = ""
    provider_timeout_seconds: float = 15.0

    # Payment Provider - Stripe (payment method lookups only)
    stripe_api_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("retry_backoff_seconds")
    @classmethod
    def validate_backoff(cls, v: list[int]) -> list[int]:
        """Backoff schedule must be non-empty and non-decreasing."""
        if not v:
            raise ValueError("retry_backoff_seconds cannot be empty")
        if any(step <= 0 for step in v):
            raise ValueError("retry_backoff_seconds entries must be positive")
        if sorted(v) != v:
            raise ValueError("retry_backoff_seconds must be non-decreasing")
        return v

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.max_order_attempts < 1:
            errors.append(f"MAX_ORDER_ATTEMPTS must be >= 1, got: {self.max_order_attempts}")

        if self.default_budget_limit_minor <= 0:
            errors.append("DEFAULT_BUDGET_LIMIT_MINOR must be positive")

        for name in ("monthly_spending_limit_minor", "annual_spending_limit_minor"):
            limit = getattr(self, name)
            if limit is not None and limit <= 0:
                errors.append(f"{name.upper()} must be positive when set, got: {limit}")

        if self.order_placement_lease_seconds <= self.order_placement_timeout_seconds:
            errors.append(
                "ORDER_PLACEMENT_LEASE_SECONDS must exceed ORDER_PLACEMENT_TIMEOUT_SECONDS"
            )

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
