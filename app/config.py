"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()


class Settings(BaseSettings):
    """Environment configuration for the marketplace payments backend."""

    app_env: str = ENV
    database_url: str = "sqlite:///marketplace_payments.db"
    LOG_LEVEL: str = "INFO"
    ALLOW_DB_CREATE_ALL: bool = False
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True

    # --- Payment processor (Stripe) --------------------------------------
    STRIPE_ENABLED: bool = False
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_SECRET_NEXT: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_CONNECT_ENABLED: bool = True
    PSP_TIMEOUT_SECONDS: float = 10.0
    PSP_STATUS_QUERY_RETRIES: int = 3

    # --- Marketplace ------------------------------------------------------
    SUPPORTED_CURRENCIES: list[str] = ["USD", "EUR", "GBP", "CAD"]
    DEFAULT_CURRENCY: str = "USD"
    PAYMENT_ACTION_EXPIRY_MINUTES: int = 30

    # --- Payouts ----------------------------------------------------------
    AUTO_PAYOUT_ENABLED: bool = True
    PAYOUT_DELAY_DAYS: int = 7
    MINIMUM_PAYOUT_AMOUNT: int = 5000
    PAYOUT_MAX_RETRIES: int = 3
    PAYOUT_RETRY_BASE_SECONDS: int = 300
    PAYOUT_RETRY_MAX_SECONDS: int = 6 * 3600
    PAYOUT_SCAN_INTERVAL_SECONDS: int = 300
    PAYOUT_LOCK_TTL_SECONDS: int = 120

    # --- Scheduler --------------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_LOCK_TTL_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("STRIPE_WEBHOOK_SECRET", "STRIPE_WEBHOOK_SECRET_NEXT", "STRIPE_SECRET_KEY")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("SUPPORTED_CURRENCIES")
    @classmethod
    def _upper_currencies(cls, value: list[str]) -> list[str]:
        return [code.strip().upper() for code in value if code.strip()]

    @field_validator("DEFAULT_CURRENCY")
    @classmethod
    def _upper_default_currency(cls, value: str) -> str:
        return value.strip().upper()


class AppInfo(BaseModel):
    name: str = "marketplace-payments"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
