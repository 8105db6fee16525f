from __future__ import annotations

from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    database_url: str = "sqlite:///wallet_ledger.db"
    echo_sql: bool = False
    lock_timeout_seconds: float = 5.0
    store_timeout_seconds: float = 5.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="WALLET_LEDGER_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@cache
def config() -> AppSettings:
    return AppSettings()
