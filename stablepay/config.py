"""Application configuration settings."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("STABLEPAY_ENV", "dev").lower()


class Settings(BaseSettings):
    """Environment configuration for the StablePay settlement engine."""

    app_env: str = ENV
    database_url: str = "sqlite:///stablepay.db"
    chain_webhook_secret: str | None = None
    chain_webhook_max_drift_seconds: int = 300
    payment_base_url: str = "http://localhost:3000"

    # --- Networks ----------------------------------------------------------
    default_network: str = "polygon"
    settlement_network: str = "polygon"

    # --- Fees ------------------------------------------------------------
    DEFAULT_FEE_RATE: Decimal = Decimal("0.015")
    MAX_FEE_RATE: Decimal = Decimal("0.05")
    MIN_FEE: Decimal = Decimal("0.30")

    # --- Payments ----------------------------------------------------------
    MAX_PAYMENT_AMOUNT: Decimal = Decimal("1000000")
    DEFAULT_EXPIRY_MINUTES: int = 30
    MIN_EXPIRY_MINUTES: int = 5
    MAX_EXPIRY_MINUTES: int = 24 * 60

    # --- Chain monitoring / webhooks ---------------------------------------
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    CONFIRMATION_WATCH_TIMEOUT_SECONDS: float = 120.0
    CONFIRMATION_POLL_INTERVAL_SECONDS: float = 5.0

    # Enable on exactly one runner.
    SCHEDULER_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False
    CORS_ALLOW_ORIGINS: list[str] = [
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("chain_webhook_secret")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty webhook secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("default_network", "settlement_network")
    @classmethod
    def _known_network(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if cleaned not in {"ethereum", "polygon"}:
            raise ValueError(f"Unsupported network: {value!r}")
        return cleaned


class AppInfo(BaseModel):
    name: str = "stablepay-settlement"
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
