# sitefleet/core/config.py
"""
Runtime configuration loaded from environment variables (and `.env`, which
`main.py` loads before anything else).
"""

import os
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_database_url() -> str:
    data_dir = os.path.join(os.path.dirname(__file__), "..", "..", "data", "db")
    return f"sqlite+aiosqlite:///{os.path.join(data_dir, 'sitefleet.sqlite')}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    app_env: str = "development"
    database_url: str = _default_database_url()
    encryption_key: str | None = None
    admin_api_key: str | None = None
    allowed_origins: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Device client
    device_timeout: float = 5.0
    device_cache_ttl: int = 300
    device_verify_tls: bool = False

    # Connectivity monitor
    heartbeat_interval: float = 60.0
    monitor_autostart: bool = True

    # Fan-out
    fanout_concurrency: int = 32
    fanout_branch_timeout: float = 20.0

    # Management tokens
    token_ttl_days: int = 30

    # Reconciliation job (seconds, 0 disables)
    reconcile_interval: int = 900

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
