"""Worker configuration."""
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Worker settings loaded from environment variables."""

    app_env: str = "development"
    database_url: str = "sqlite:///./csv_worker.db"

    # Redis (for Celery and progress pub/sub)
    redis_url: str = "redis://localhost:6379/0"

    # Supabase storage
    supabase_url: str = "http://localhost:54321"
    supabase_service_role_key: str = ""
    storage_bucket: str = "csv-uploads"
    storage_timeout: float = Field(30.0, gt=0)

    # Poll loop and job lifecycle
    worker_poll_interval: float = Field(5.0, gt=0)
    worker_batch_size: int = Field(1000, gt=0)
    worker_max_concurrency: int = Field(4, gt=0)
    worker_max_retries: int = Field(3, ge=0)
    worker_heartbeat_interval: float = Field(30.0, gt=0)
    worker_shutdown_timeout: float = Field(300.0, gt=0)
    worker_malformed_job_backoff: float = Field(1.0, ge=0)

    # Streaming and progress
    stream_piece_size: int = Field(64 * 1024, gt=0)
    progress_update_interval: int = Field(10, gt=0)
    adaptive_batching: bool = False

    # Retry executor
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(10.0, ge=0)
    retry_poll_attempts: int = Field(2, gt=0)
    retry_update_attempts: int = Field(3, gt=0)
    retry_commit_attempts: int = Field(3, gt=0)

    # Housekeeping
    stale_job_days: int = Field(7, gt=0)

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
