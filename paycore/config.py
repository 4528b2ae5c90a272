"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("PAYCORE_ENV", "dev").lower()

RETRY_EXHAUSTION_POLICIES = {"mark_failed", "manual_review", "await_expiry"}


class Settings(BaseSettings):
    """Environment configuration for the payment core."""

    app_env: str = ENV
    database_url: str = "sqlite:///paycore.db"
    psp_webhook_secret: str | None = None
    psp_webhook_secret_next: str | None = None
    API_KEY: str | None = Field(
        default=None,
        validation_alias=AliasChoices("API_KEY", "PAYCORE_API_KEY"),
    )
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False
    SCHEDULER_ENABLED: bool = False
    ALLOW_DB_CREATE_ALL: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Ledger ------------------------------------------------------------
    MIN_DEPOSIT_AMOUNT: int = 10_000
    CURRENCY: str = "VND"
    INVOICE_TTL_DAYS: int = 30
    INVOICE_PAGE_MAX_LIMIT: int = 50

    # --- Admission guard ---------------------------------------------------
    WEBHOOK_RECORD_TTL_HOURS: int = 24
    SESSION_WINDOW_HOURS: int = 24
    MAX_PENDING_SESSIONS: int = 5

    # --- Webhook intake ----------------------------------------------------
    DEDUP_TTL_SECONDS: float = 60.0
    RATE_LIMIT_MAX_TOKENS: int = 100
    RATE_LIMIT_REFILL_RATE: float = 10.0
    RATE_LIMIT_WINDOW_SECONDS: float = 1.0

    # --- Streaming ---------------------------------------------------------
    STREAM_HEARTBEAT_SECONDS: float = 30.0
    STATUS_CACHE_TERMINAL_TTL_SECONDS: float = 600.0

    # --- Outbound provider -------------------------------------------------
    PROVIDER_API_BASE_URL: str = "https://api-merchant.payos.vn"
    PROVIDER_CLIENT_ID: str | None = None
    PROVIDER_API_KEY: str | None = None
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    RETRY_MAX_RETRIES: int = 5
    RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    RETRY_EXHAUSTION_POLICY: str = "manual_review"

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("psp_webhook_secret", "psp_webhook_secret_next", "API_KEY")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("RETRY_EXHAUSTION_POLICY")
    @classmethod
    def _validate_policy(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in RETRY_EXHAUSTION_POLICIES:
            raise ValueError(
                f"RETRY_EXHAUSTION_POLICY must be one of {sorted(RETRY_EXHAUSTION_POLICIES)}"
            )
        return normalized


class AppInfo(BaseModel):
    name: str = "paycore"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "RETRY_EXHAUSTION_POLICIES",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]
