"""
Application configuration using pydantic-settings.
Loads from environment variables with .env file support.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///./stagegate.db"

    # Security
    secret_key: str = "change-this-in-production-minimum-32-characters-long"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440  # 24 hours

    # Application
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR

    # API Settings
    api_v1_prefix: str = "/api/v1"
    project_name: str = "Stage Gate"
    version: str = "1.0.0"

    # Definitions
    stage_directory: Optional[str] = None  # directory of *.yaml stage files
    trigger_file: Optional[str] = None     # yaml mapping of trigger kind -> {key: stage}
    catalog_file: Optional[str] = None     # yaml mapping of resource kind -> resources
    starting_stages: List[str] = []

    # Progression policy
    grant_policy: str = "cascading"  # cascading | strict
    revoke_cascade: bool = False
    bypass_window_seconds: float = 10.0

    # Groups
    default_group_policy: str = "shared"  # shared | independent
    group_admission: str = "unrestricted"  # exact | minimum | unrestricted
    leave_policy: str = "retain"  # retain | reset
    adopt_group_stages_on_join: bool = True
    membership_poll_interval_seconds: float = 0.0  # 0 = event-driven host only

    # Processing cycle
    cycle_interval_seconds: float = 0.05
    reconcile_debounce_seconds: float = 0.25
    trigger_budget_per_cycle: int = 20

    # Resolution
    lock_table_kinds: List[str] = ["item"]
    resolution_cache_size: int = 4096


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
