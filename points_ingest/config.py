"""Application configuration."""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = "development"
    database_url: str = "sqlite:///./points_ingest.db"

    # Redis (for Celery and progress pub/sub)
    redis_url: str = "redis://localhost:6379/0"
    publish_progress: bool = True

    # Worker loop
    worker_poll_interval_seconds: float = 2.0
    worker_max_jobs_per_poll: int = 10
    worker_max_concurrent_jobs: int = 10

    # Ingestion
    ingest_chunk_size: int = 100
    ingest_row_delay_seconds: float = 0.01
    progress_write_attempts: int = 5
    progress_write_initial_backoff_seconds: float = 0.5
    progress_write_max_backoff_seconds: float = 10.0

    # Row and job policy
    failure_rate_threshold: float = 0.5
    allow_negative_amounts: bool = True
    strict_row_validation: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
