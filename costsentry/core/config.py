from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Main configuration for the CostSentry sync engine.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """
    APP_NAME: str = "CostSentry"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    TESTING: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./costsentry.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Cache (Redis for production, in-memory for dev)
    REDIS_URL: Optional[str] = None
    SNAPSHOT_CACHE_TTL_SECONDS: int = 300  # 5 minutes

    # Sync
    SYNC_MAX_CONCURRENCY: int = 8
    SYNC_FETCH_TIMEOUT_SECONDS: float = 60.0

    # Fetch retry/backoff
    FETCH_MAX_ATTEMPTS: int = 4
    FETCH_BACKOFF_MIN_SECONDS: float = 1.0
    FETCH_BACKOFF_MAX_SECONDS: float = 20.0
    FETCH_HTTP_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_RATE_LIMIT_PER_SECOND: float = 5.0

    # Baseline policy
    BASELINE_HALF_LIFE_DAYS: float = 14.0

    # Anomaly policy
    ANOMALY_MIN_SAMPLES: int = 7
    ANOMALY_THRESHOLD_PERCENT: float = 20.0
    ANOMALY_MEDIUM_PERCENT: float = 50.0
    ANOMALY_HIGH_PERCENT: float = 100.0
    ANOMALY_CRITICAL_PERCENT: float = 200.0
    ANOMALY_TREND_MIN_DAYS: int = 3
    ANOMALY_TOP_CONTRIBUTORS: int = 6
    ANOMALY_MIN_EXPECTED_COST: float = 0.01

    # Notifications
    SLACK_BOT_TOKEN: Optional[str] = None
    SLACK_CHANNEL_ID: Optional[str] = None

    # Scheduler
    SCHEDULER_HOUR: int = 2
    SCHEDULER_MINUTE: int = 0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return not self.DEBUG and not self.TESTING

    @model_validator(mode="after")
    def validate_severity_cut_points(self) -> "Settings":
        """Severity buckets must be strictly increasing so every magnitude maps to one bucket."""
        cut_points = [
            self.ANOMALY_THRESHOLD_PERCENT,
            self.ANOMALY_MEDIUM_PERCENT,
            self.ANOMALY_HIGH_PERCENT,
            self.ANOMALY_CRITICAL_PERCENT,
        ]
        if cut_points[0] <= 0 or any(a >= b for a, b in zip(cut_points, cut_points[1:])):
            raise ValueError(
                f"Anomaly severity cut points must be positive and strictly increasing, got {cut_points}"
            )
        if self.BASELINE_HALF_LIFE_DAYS <= 0:
            raise ValueError("BASELINE_HALF_LIFE_DAYS must be positive.")
        if self.SYNC_MAX_CONCURRENCY < 1:
            raise ValueError("SYNC_MAX_CONCURRENCY must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Returns a singleton instance of the application settings."""
    return Settings()
