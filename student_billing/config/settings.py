"""
Application Settings for Student Billing

Centralized configuration using Pydantic Settings with .env support.
Every field has a default so the client works without an env file;
values are validated when the settings object is built.
"""

from functools import lru_cache
from typing import Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Client settings loaded from environment variables.

    RECONCILE_DELAYS is the fixed checkout-confirmation schedule: one
    verification attempt runs after each delay (seconds, measured from
    the moment the checkout was started). There is no other retry policy.
    """

    # Dashboard API
    api_base_url: str = "http://localhost:3000/api"
    api_token: Optional[str] = None
    request_timeout: float = 30.0

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Checkout reconciliation
    reconcile_delays: list[float] = [2.0, 5.0, 10.0]
    packages_loaded_recheck_delay: float = 0.5
    upgrade_refresh_delay: float = 3.0
    downgrade_refresh_delay: float = 2.0

    # Plan change confirmation
    preview_refresh_interval: float = 60.0
    optimistic_cancel_ttl: float = 120.0

    # Session storage
    pending_checkout_key: str = "student-dashboard:pending-checkout"
    session_storage_path: Optional[str] = None

    # Payment provider routing (card + mobile money gateway)
    local_payment_currencies: list[str] = ["ETB"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_schedule(self) -> "Settings":
        """Validate the reconciliation schedule and refresh intervals."""
        if not self.reconcile_delays:
            raise ValueError("RECONCILE_DELAYS must contain at least one delay")

        if any(delay < 0 for delay in self.reconcile_delays):
            raise ValueError("RECONCILE_DELAYS cannot contain negative delays")

        if self.preview_refresh_interval <= 0:
            raise ValueError("PREVIEW_REFRESH_INTERVAL must be positive")

        if self.request_timeout <= 0:
            raise ValueError("REQUEST_TIMEOUT must be positive")

        self.api_base_url = self.api_base_url.rstrip("/")
        self.local_payment_currencies = [c.upper() for c in self.local_payment_currencies]

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
