"""
Application Settings for the Box Billing Engine

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.domain.billing.policy import BillingPolicy


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Billing constants default to the values the engine was designed
    around (3 retries, 5 minute backoff base, 75/3 member limits,
    100 minor units per member of overage).
    """

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Admin endpoints (X-Admin-Key header)
    admin_api_key: Optional[str] = None

    # Stripe Configuration
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_timeout_seconds: int = 10
    stripe_max_network_retries: int = 2

    # Billing Event Retry Configuration
    billing_max_retries: int = 3
    billing_retry_base_minutes: int = 5
    billing_processing_stale_minutes: int = 30
    billing_retry_batch_size: int = 20

    # Plan Defaults (used when a plan row or price is missing)
    default_athlete_limit: int = 75
    default_coach_limit: int = 3
    default_overage_rate: int = 100

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_billing_settings(self) -> "Settings":
        """Reject settings the retry schedule cannot work with."""
        if self.billing_max_retries < 1:
            raise ValueError("BILLING_MAX_RETRIES must be at least 1")
        if self.billing_retry_base_minutes < 1:
            raise ValueError("BILLING_RETRY_BASE_MINUTES must be at least 1")

        if self.is_production and not self.stripe_webhook_secret:
            raise ValueError("STRIPE_WEBHOOK_SECRET required when ENVIRONMENT=production")

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    @property
    def billing_policy(self) -> BillingPolicy:
        return BillingPolicy(
            max_retries=self.billing_max_retries,
            retry_base_delay=timedelta(minutes=self.billing_retry_base_minutes),
            processing_stale_after=timedelta(minutes=self.billing_processing_stale_minutes),
            retry_batch_size=self.billing_retry_batch_size,
            default_athlete_limit=self.default_athlete_limit,
            default_coach_limit=self.default_coach_limit,
            default_overage_rate=self.default_overage_rate,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
