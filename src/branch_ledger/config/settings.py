"""Configuration settings for the branch ledger engine."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Flat settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Persistence
    ledger_db_path: str = Field(default="branch_ledger.sqlite3", validation_alias="LEDGER_DB_PATH")

    # Branch registry (external service)
    registry_url: str = Field(
        default="http://localhost:5000", validation_alias="BRANCH_REGISTRY_URL"
    )
    registry_token: SecretStr | None = Field(default=None, validation_alias="BRANCH_REGISTRY_TOKEN")
    registry_timeout: float = Field(default=10.0, validation_alias="BRANCH_REGISTRY_TIMEOUT")
    registry_max_retries: int = Field(default=3, validation_alias="BRANCH_REGISTRY_MAX_RETRIES")

    # Concurrency
    lock_timeout_seconds: float = Field(default=5.0, validation_alias="LOCK_TIMEOUT_SECONDS")
    recalc_max_attempts: int = Field(default=3, validation_alias="RECALC_MAX_ATTEMPTS")
    rebuild_concurrency: int = Field(default=4, validation_alias="REBUILD_CONCURRENCY")

    # Accounting
    ledger_timezone: str = Field(default="UTC", validation_alias="LEDGER_TIMEZONE")
    ledger_max_abs_total: Decimal = Field(
        default=Decimal("1000000000000000"), validation_alias="LEDGER_MAX_ABS_TOTAL"
    )

    # WebSocket
    ws_host: str = Field(default="0.0.0.0", validation_alias="WS_HOST")
    ws_port: int = Field(default=8766, validation_alias="WS_PORT")
    watch_interval_seconds: float = Field(default=2.0, validation_alias="WATCH_INTERVAL_SECONDS")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(default="console", validation_alias="LOG_FORMAT")


@lru_cache
def get_settings() -> LedgerSettings:
    """Get cached settings instance."""
    return LedgerSettings()
