"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting has the wrong type, the app fails fast with a
clear error message.

Usage:
    from rent_settlement.config import get_settings
    settings = get_settings()
    print(settings.lease_ttl_seconds)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Rent Settlement engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://settlement:settlement_dev"
        "@localhost:5432/rent_settlement"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis (notification stream) ---
    redis_url: str = "redis://localhost:6379/0"
    redis_notification_stream: str = "rent_settlement:notifications"
    redis_stream_maxlen: int = 100_000

    # --- External ledger ---
    # "simulated" runs an in-process ledger (local demos only).
    ledger_backend: Literal["http", "simulated"] = "http"
    ledger_base_url: str = "http://localhost:8545"
    ledger_api_key: str = ""
    ledger_timeout_seconds: float = Field(default=10.0, gt=0)
    ledger_read_retries: int = Field(default=3, ge=1)
    lifecycle_finality_timeout_seconds: float = Field(default=30.0, gt=0)
    lifecycle_poll_interval_seconds: float = Field(default=0.5, gt=0)

    # --- Reconciliation ---
    lease_ttl_seconds: int = Field(default=60, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=2.0, ge=0)
    backoff_cap_seconds: float = Field(default=300.0, ge=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    max_staleness_seconds: int = Field(default=3600, gt=0)
    debounce_window_seconds: int = Field(default=30, ge=0)
    worker_count: int = Field(default=4, ge=1)
    batch_size: int = Field(default=50, ge=1)
    balance_check_every_cycles: int = Field(default=12, ge=1)
    reconciliation_enabled: bool = True
    notifier_backend: Literal["log", "redis"] = "log"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def sync_database_url(self) -> str:
        """Synchronous database URL for Alembic migrations."""
        return self.database_url.replace("+asyncpg", "+psycopg2")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
