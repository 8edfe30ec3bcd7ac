"""Centralized settings for the data-export governance engine.

Uses pydantic-settings to load from environment variables (prefixed
DATAEXPORT_) with defaults suitable for a single-node deployment.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # --- Database (workflow/task bookkeeping) ---
    database_url: str = "sqlite:///./data/dataexport.db"
    database_echo: bool = False

    # --- Artifacts ---
    artifact_dir: str = "./export"
    artifact_retention_hours: int = 24

    # --- Export execution ---
    export_worker_pool_size: int = 4
    export_query_timeout_seconds: float = 300.0

    # --- SQL audit ---
    audit_timeout_seconds: float = 30.0

    # --- Expiry ---
    approval_ttl_hours: int = 168  # 7 days waiting for approvers
    execution_ttl_hours: int = 24  # approved but never executed
    orphan_task_ttl_hours: int = 24
    expirer_interval_seconds: float = 3600.0
    expirer_batch_size: int = 100

    # --- Outcome commit ---
    commit_retry_attempts: int = 3
    commit_retry_delay_seconds: float = 0.5

    # --- Notifications ---
    notification_workers: int = 2

    model_config = {
        "env_prefix": "DATAEXPORT_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
