"""
config.py — Environment-driven settings for racesync.

All tunables (provider endpoints, intervals, caps) are read here once.
Values come from the process environment or a local .env file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "racesync.db"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Storage
    DB_PATH: Path = Field(default=DEFAULT_DB_PATH)

    # "production" hides upstream error details from callers
    ENVIRONMENT: str = Field(default="development")

    # Timing provider API
    PROVIDER_BASE_URL: str = Field(default="https://rqs.racetigertiming.com")
    PROVIDER_INFO_PATH: str = Field(default="/Dif/info")
    PROVIDER_BIO_PATH: str = Field(default="/Dif/bio")
    PROVIDER_SCORE_PATH: str = Field(default="/Dif/score")
    PROVIDER_SPLIT_PATH: str = Field(default="/Dif/splitScore")
    PROVIDER_PASSED_TIME_PATH: str = Field(default="/Dif/split")
    PROVIDER_PARTNER_CODE: str = Field(default="000001")
    PROVIDER_TIMEOUT_S: float = Field(default=15.0, gt=0)
    PROVIDER_MAX_PAGES: int = Field(default=200, ge=1)
    # Per paging loop and per runner index load
    PROVIDER_MAX_ROWS: int = Field(default=100_000, ge=1)
    PROVIDER_USER_AGENT: Optional[str] = Field(default="racesync/1.0")

    # Background jobs
    SYNC_INTERVAL_S: float = Field(default=15.0, gt=0)
    CUTOFF_INTERVAL_S: float = Field(default=60.0, gt=0)
    SCHEDULER_ENABLED: bool = Field(default=True)
    CUTOFF_MONITOR_ENABLED: bool = Field(default=True)

    # Write a sync log row for every scheduled timing sync
    LOG_TIMING_SYNCS: bool = Field(default=True)

    # Result caps
    LISTING_CAP: int = Field(default=2000, ge=1)
    ERROR_SAMPLE_CAP: int = Field(default=20, ge=1)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"


# Global settings instance
settings = Settings()
