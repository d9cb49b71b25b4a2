"""Application configuration."""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="opsflow", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    workers: int = Field(default=1, description="Number of workers")
    reload: bool = Field(default=False, description="Auto-reload on changes")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./opsflow.db", description="Run store database URL"
    )
    database_pool_size: int = Field(default=10, description="Database pool size")
    database_max_overflow: int = Field(
        default=20, description="Database max overflow"
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    redis_password: Optional[str] = Field(default=None, description="Redis password")
    redis_max_connections: int = Field(
        default=10, description="Redis max connections"
    )

    # Celery
    celery_broker_url: str = Field(
        default="redis://localhost:6379/1", description="Celery broker URL"
    )
    celery_result_backend: str = Field(
        default="redis://localhost:6379/2", description="Celery result backend"
    )
    celery_task_serializer: str = Field(
        default="json", description="Celery task serializer"
    )
    celery_result_serializer: str = Field(
        default="json", description="Celery result serializer"
    )
    celery_accept_content: List[str] = Field(
        default=["json"], description="Celery accept content"
    )
    celery_timezone: str = Field(default="UTC", description="Celery timezone")
    schedule_tick_seconds: int = Field(
        default=60, description="Interval of the schedule trigger tick"
    )

    # Execution
    retry_max_attempts: int = Field(
        default=3, description="Attempts per node before a run fails"
    )
    retry_initial_delay_ms: int = Field(
        default=1000, description="First backoff delay between node attempts"
    )
    retry_max_delay_ms: int = Field(
        default=60000, description="Upper bound for the backoff delay"
    )
    inline_sleep_threshold_ms: int = Field(
        default=5000,
        description="Sleeps shorter than this are awaited in-process instead of suspending the run",
    )
    bundle_max_concurrency: int = Field(
        default=5, description="Upper bound for concurrent bundle item runs"
    )
    max_subworkflow_depth: int = Field(
        default=10, description="Maximum nesting depth of sub-workflow runs"
    )
    run_lease_seconds: int = Field(
        default=300,
        description="How long a running run stays claimed without a checkpoint before another worker may take it over",
    )

    # Status channel
    status_channel_prefix: str = Field(
        default="opsflow:status", description="Prefix for status pub/sub channels"
    )

    # Trigger ingress
    webhook_secret: Optional[str] = Field(
        default=None, description="Shared secret expected on trigger ingress"
    )
    webhook_secret_header: str = Field(
        default="X-Opsflow-Secret", description="Header carrying the shared secret"
    )
    allow_unauthenticated_triggers: bool = Field(
        default=False, description="Accept trigger ingress when no secret is configured"
    )
    workflows_path: Optional[str] = Field(
        default=None, description="Directory of workflow definition JSON files"
    )

    # Domain operations backend
    operations_base_url: Optional[str] = Field(
        default=None, description="Base URL of the domain operations service"
    )
    operations_timeout: float = Field(
        default=30.0, description="Domain operation request timeout in seconds"
    )
    operations_api_key: Optional[str] = Field(
        default=None, description="Bearer token for the domain operations service"
    )

    # Monitoring
    metrics_enabled: bool = Field(default=True, description="Enable metrics")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() in ("development", "dev")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment.lower() in ("production", "prod")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
