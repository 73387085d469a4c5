from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Bonus Ledger API"
    database_url: str = "sqlite:///bonus_ledger.db"
    log_level: str = "INFO"

    secret_key: str = "change-me"
    token_ttl_seconds: int = 86400

    # Reconciliation is disabled until an accrual authority is configured.
    accrual_system_address: Optional[str] = None
    reconcile_interval_seconds: float = 115.0
    rows_per_cycle: int = 10
    accrual_attempts: int = 5
    accrual_rate_limit_pause_seconds: float = 30.0
    accrual_backoff_step_seconds: float = 10.0
    accrual_timeout_seconds: float = 5.0
    # Only used on databases without row locks; must outlast a full cycle.
    claim_lease_seconds: float = 3600.0

    db_statement_timeout_ms: int = 5000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BONUS_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
