"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).

Settings are constructed once by the caller (application factory, worker
bootstrap, tests) and handed to each component explicitly.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Xero OAuth2
    xero_client_id: str = Field(default="", description="Xero OAuth2 client ID")
    xero_client_secret: str = Field(default="", description="Xero OAuth2 client secret")
    xero_redirect_uri: str = Field(
        default="http://localhost:8000/api/v1/auth/callback",
        description="OAuth2 redirect URI",
    )
    xero_token_url: str = Field(
        default="https://identity.xero.com/connect/token",
        description="Xero OAuth2 token endpoint",
    )
    xero_api_base_url: str = Field(
        default="https://api.xero.com/api.xro/2.0",
        description="Xero accounting API base URL",
    )
    xero_http_timeout_seconds: float = Field(
        default=30.0, gt=0, description="HTTP timeout for Xero calls"
    )

    # Token lifecycle
    token_refresh_buffer_seconds: int = Field(
        default=300, ge=0, description="Refresh tokens this long before expiry"
    )
    token_default_expiry_seconds: int = Field(
        default=1800, gt=0, description="Assumed access token lifetime when provider omits it"
    )
    token_consecutive_failure_limit: int = Field(
        default=10, ge=1, description="Refresh failures before re-authentication is required"
    )

    # Provider rate limiting and pagination
    provider_requests_per_second: int = Field(default=5, ge=1, description="Outbound calls per second")
    provider_requests_per_minute: int = Field(default=60, ge=1, description="Outbound calls per minute")
    provider_page_size: int = Field(default=100, ge=1, description="Records requested per page")
    provider_max_pages: int = Field(default=100, ge=1, description="Hard stop for pagination loops")
    default_retry_attempts: int = Field(default=3, ge=1, description="Attempts for rate-limited calls")
    default_retry_delay_ms: int = Field(default=1000, ge=0, description="Base retry delay")
    rate_limit_retry_delay_ms: int = Field(default=500, ge=0, description="Delay after a 429 response")

    # Import pipeline
    import_chunk_size: int = Field(default=50, ge=1, description="Rows per bulk write")

    # Sync jobs
    sync_job_default_priority: int = Field(default=5, ge=0, description="Default sync job priority")
    sync_job_timeout_minutes: int = Field(
        default=60, ge=1, description="Active sync jobs older than this are stalled"
    )
    stalled_job_check_interval_seconds: int = Field(
        default=300, ge=1, description="Interval between stalled-job reconciliation passes"
    )

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    token_refresh_distributed_lock: bool = Field(
        default=True, description="Serialize token refreshes across worker processes via Redis"
    )
    token_refresh_lock_timeout_seconds: int = Field(
        default=30, ge=1, description="Expiry of the Redis refresh lock"
    )
    token_refresh_lock_wait_seconds: int = Field(
        default=60, ge=1, description="How long a worker waits for another worker's refresh"
    )

    # Celery
    celery_broker_url: str = Field(
        default="redis://localhost:6379/1", description="Celery broker URL"
    )
    celery_result_backend: str = Field(
        default="redis://localhost:6379/2", description="Celery result backend"
    )
    celery_task_serializer: str = Field(default="json", description="Task serializer")
    celery_result_serializer: str = Field(default="json", description="Result serializer")
    celery_accept_content: str = Field(default="json", description="Accepted content types")
    celery_task_always_eager: bool = Field(
        default=False, description="Run tasks inline in the calling process (tests, local runs)"
    )
    celery_worker_concurrency: int = Field(default=2, ge=1, description="Processes per worker")

    # Database
    db_path: str = Field(default="./data/ledgersync.duckdb", description="DuckDB file path")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=False, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    testing: bool = Field(default=False, description="Testing mode")

    @property
    def cors_origin_list(self) -> List[str]:
        """Parse comma-separated CORS origins."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def celery_accept_content_list(self) -> List[str]:
        return [item.strip() for item in self.celery_accept_content.split(",") if item.strip()]

    @property
    def refresh_retry_delay_seconds(self) -> float:
        return self.default_retry_delay_ms / 1000

    @property
    def rate_limit_retry_delay_seconds(self) -> float:
        return self.rate_limit_retry_delay_ms / 1000
