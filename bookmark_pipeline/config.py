"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (compatible; BookmarkManager/1.0; +https://bookmarkmanager.com)"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log renderer: json for services, console for humans"
    )

    # Database
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL (bookmarks + job queue)"
    )
    db_pool_min_size: int = Field(default=1, ge=0, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, ge=1, description="Maximum connection pool size")
    db_command_timeout: float = Field(
        default=30.0, gt=0, description="Per-statement timeout in seconds"
    )

    # Job queue
    job_queue_mode: Literal["memory", "postgres"] = Field(
        default="postgres",
        description="Queue backend: memory (single process) or postgres (durable, multi-replica)",
    )
    job_poll_interval_s: float = Field(
        default=1.0, gt=0, description="Idle sleep between dequeue attempts"
    )
    job_stale_timeout_minutes: int = Field(
        default=10, ge=1, description="Active leases older than this are reaped"
    )
    job_rate_limit_per_second: int = Field(
        default=10, ge=1, description="Maximum dequeues per second per queue, system-wide"
    )
    job_backoff_base_s: float = Field(
        default=2.0, gt=0, description="First retry delay; doubles per attempt"
    )
    job_backoff_max_s: float = Field(
        default=300.0, gt=0, description="Upper bound on any retry delay"
    )
    job_completed_retention_hours: int = Field(
        default=24, ge=0, description="Completed jobs are purged after this window"
    )
    job_failed_retention_days: int = Field(
        default=7, ge=0, description="Failed jobs are purged after this window"
    )
    job_shutdown_timeout_s: float = Field(
        default=60.0, gt=0, description="Grace period for in-flight jobs on shutdown"
    )
    snapshot_concurrency: int = Field(default=5, ge=1, description="Snapshot worker pool size")
    index_concurrency: int = Field(default=5, ge=1, description="Index worker pool size")
    maintenance_concurrency: int = Field(
        default=3, ge=1, description="Maintenance worker pool size"
    )

    # Browser automation
    browser_headless: bool = Field(default=True, description="Run Chromium headless")
    browser_viewport_width: int = Field(default=1280, ge=320)
    browser_viewport_height: int = Field(default=720, ge=240)
    browser_user_agent: str = Field(default=DEFAULT_USER_AGENT)
    page_timeout_s: float = Field(
        default=30.0, gt=0, description="Hard limit for the whole fetch+render step"
    )
    page_settle_delay_s: float = Field(
        default=1.0, ge=0, description="Wait after network idle for late scripts"
    )

    # Thumbnails
    thumbnail_width: int = Field(default=640, ge=16)
    thumbnail_height: int = Field(default=360, ge=16)
    thumbnail_quality: int = Field(default=80, ge=1, le=95, description="JPEG quality")

    # Object storage
    storage_mode: Literal["local", "minio"] = Field(
        default="minio", description="Object storage backend"
    )
    storage_local_root: str = Field(
        default="./data/objects", description="Root directory for the local backend"
    )
    storage_bucket: str = Field(default="snapshots", description="Snapshot bucket")
    minio_endpoint: str = Field(default="localhost:9000", description="MinIO/S3 endpoint")
    minio_access_key: Optional[str] = Field(default=None)
    minio_secret_key: Optional[str] = Field(default=None)
    minio_secure: bool = Field(default=False, description="Use TLS for MinIO")
    storage_timeout_s: float = Field(default=30.0, gt=0)

    # Search engine
    meili_url: str = Field(default="http://localhost:7700", description="Meilisearch URL")
    meili_api_key: Optional[str] = Field(default=None, description="Meilisearch API key")
    meili_index: str = Field(default="bookmarks", description="Search index name")
    meili_timeout_s: float = Field(default=10.0, gt=0)

    # Link checker
    link_check_timeout_s: float = Field(default=10.0, gt=0)
    link_check_delay_s: float = Field(
        default=0.1, ge=0, description="Pause between consecutive probes"
    )

    # Maintenance scheduler
    maintenance_schedule_interval_s: int = Field(
        default=0, ge=0, description="Enqueue all-owner scans this often; 0 disables"
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking and performance monitoring"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)"
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
