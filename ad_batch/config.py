"""Configuration management using Pydantic settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_name: str = "Advertising Batch Pipeline"
    app_version: str = "0.3.0"
    debug: bool = True
    log_level: str = "INFO"
    log_format: str = "json"  # "json" for production, "console" for dev

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./data/ad_batch.db"
    db_pool_size: int = 5
    db_pool_max_overflow: int = 10
    db_pool_timeout: int = 30

    # Redis / ARQ Task Queue
    redis_url: str = "redis://localhost:6379"
    arq_job_timeout: int = 1800  # A 20-item job with retries can run for a long time
    arq_max_jobs: int = 4
    arq_health_check_interval: int = 60
    arq_stop_timeout_seconds: float = 30.0
    use_arq_worker: bool = True  # Set False to bypass ARQ and use BackgroundTasks

    # Generation provider (KIE.AI)
    kie_api_base: str = "https://api.kie.ai"
    kie_api_key: str | None = None  # Platform key, last resort after admin/user keys
    kie_model: str = "google/nano-banana-edit"
    kie_service_name: str = "kie-ai"
    provider_timeout_seconds: float = 30.0

    # Item processing
    item_max_retries: int = 3
    item_poll_interval_seconds: float = 2.0
    item_poll_timeout_seconds: float = 120.0
    item_lease_minutes: int = 10

    # Scheduling
    scheduler_wave_size: int = 5
    default_image_quality: Literal["1K", "2K", "4K"] = "2K"

    # Job cleanup
    job_cleanup_grace_seconds: int = 3  # Lets the "job finished" notice display first
    job_cleanup_interval_seconds: int = 5
    job_list_limit: int = 20

    # Change notifications
    change_queue_size: int = 1000
    sse_heartbeat_seconds: int = 30

    # Client sync cache
    cache_ttl_seconds: float = 60.0
    cache_refresh_interval_seconds: float = 60.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
