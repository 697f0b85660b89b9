"""
Settings for the reconciliation core, using Pydantic Settings.
All parameters are loaded from environment variables with sensible defaults.
"""

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_BASE_PATH = Path(os.environ.get("SETTLER_BASE_PATH", Path.cwd()))
ENV_FILE_PATH = APP_BASE_PATH / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    # Matching defaults (used when a rule omits them)
    default_amount_tolerance: Decimal = Field(default=Decimal("0.01"))
    default_date_tolerance_days: float = Field(default=3.0)
    fuzzy_match_threshold: float = Field(default=0.9)

    # FX rate lookups
    fx_api_url: str = Field(default="https://api.exchangerate.host")
    fx_timeout_seconds: float = Field(default=10.0)
    fx_max_retries: int = Field(default=3)

    # Event store snapshots
    snapshot_every_n_events: int = Field(default=100)
    max_events_without_snapshot: int = Field(default=200)

    # Saga step retries
    saga_max_retries: int = Field(default=3)
    saga_retry_min_seconds: float = Field(default=1.0)
    saga_retry_max_seconds: float = Field(default=30.0)

    # Storage
    reports_dir: Path = Field(default=Path("./data/reports"))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
