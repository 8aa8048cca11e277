"""Configuration management using pydantic-settings."""
from datetime import datetime, timezone
from typing import Optional

from pydantic_settings import BaseSettings


def _program_start_default() -> datetime:
    """Start of the current UTC day, used when no start date is configured."""
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Position/pool indexer
    indexer_base_url: str = "http://localhost:8080/api"
    indexer_api_key: Optional[str] = None
    pool_address: str = "default"
    request_timeout_seconds: float = 15.0
    max_concurrent_requests: int = 10

    # Cache settings
    cache_max_entries: int = 1024
    cache_fetch_timeout_seconds: float = 10.0
    cache_sweep_interval_seconds: float = 60.0

    # Ranking
    ranking_capacity: int = 100

    # Reward engine
    out_of_range_multiplier: float = 0.0

    # Program defaults (the admin can replace these at runtime)
    program_total_allocation: float = 3_000_000.0
    program_duration_days: int = 90
    program_start_date: Optional[datetime] = None
    program_base_weight: float = 0.6
    program_lock_period_days: int = 7
    minimum_position_value: float = 100.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def resolved_program_start(self) -> datetime:
        return self.program_start_date or _program_start_default()


settings = Settings()
