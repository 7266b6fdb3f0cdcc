"""Configuration management for the sandbox lifecycle service."""

from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # API Settings
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database Settings
    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")
    postgres_db: str = Field(default="sandboxes", alias="POSTGRES_DB")
    postgres_user: str = Field(default="postgres", alias="POSTGRES_USER")
    postgres_password: str = Field(default="password", alias="POSTGRES_PASSWORD")
    postgres_pool_size: int = Field(default=20, alias="POSTGRES_POOL_SIZE")
    postgres_max_overflow: int = Field(default=40, alias="POSTGRES_MAX_OVERFLOW")
    postgres_pool_recycle: int = Field(default=3600, alias="POSTGRES_POOL_RECYCLE")

    # Redis Settings
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: str | None = Field(default=None, alias="REDIS_PASSWORD")

    # E2B Settings
    e2b_api_key: str | None = Field(default=None, alias="E2B_API_KEY")
    e2b_template_id: str | None = Field(default=None, alias="E2B_TEMPLATE_ID")
    sandbox_create_timeout_seconds: int = Field(
        default=600, alias="SANDBOX_CREATE_TIMEOUT_SECONDS"
    )  # provider idle timeout before auto-pause

    # Reconnect retry policy
    sandbox_reconnect_max_attempts: int = Field(default=5, alias="SANDBOX_RECONNECT_MAX_ATTEMPTS")
    sandbox_reconnect_base_delay: float = Field(default=1.0, alias="SANDBOX_RECONNECT_BASE_DELAY")
    sandbox_reconnect_max_delay: float = Field(default=10.0, alias="SANDBOX_RECONNECT_MAX_DELAY")
    sandbox_liveness_timeout_seconds: float = Field(
        default=10.0, alias="SANDBOX_LIVENESS_TIMEOUT_SECONDS"
    )

    # Operation budget and locking
    sandbox_ensure_budget_seconds: float = Field(
        default=90.0, alias="SANDBOX_ENSURE_BUDGET_SECONDS"
    )
    sandbox_lock_ttl_seconds: int = Field(default=120, alias="SANDBOX_LOCK_TTL_SECONDS")
    sandbox_lock_wait_seconds: float = Field(default=15.0, alias="SANDBOX_LOCK_WAIT_SECONDS")
    sandbox_lock_retry_interval: float = Field(default=0.5, alias="SANDBOX_LOCK_RETRY_INTERVAL")

    # Dev server readiness
    dev_server_port: int = Field(default=3000, alias="DEV_SERVER_PORT")
    sandbox_project_dir: str = Field(default="/home/user/project", alias="SANDBOX_PROJECT_DIR")
    dev_server_ready_window_seconds: float = Field(
        default=30.0, alias="DEV_SERVER_READY_WINDOW_SECONDS"
    )
    dev_server_poll_interval: float = Field(default=1.0, alias="DEV_SERVER_POLL_INTERVAL")
    dev_server_probe_timeout: float = Field(default=5.0, alias="DEV_SERVER_PROBE_TIMEOUT")
    dev_server_install_timeout: float = Field(default=120.0, alias="DEV_SERVER_INSTALL_TIMEOUT")
    dev_server_auto_install: bool = Field(default=True, alias="DEV_SERVER_AUTO_INSTALL")

    # Process-local handle cache
    sandbox_cache_size: int = Field(default=256, alias="SANDBOX_CACHE_SIZE")
    sandbox_idle_pause_seconds: int = Field(default=300, alias="SANDBOX_IDLE_PAUSE_SECONDS")

    # Backup store (S3 / Cloudflare R2)
    backup_bucket_name: str = Field(default="project-backups", alias="BACKUP_BUCKET_NAME")
    backup_endpoint_url: str | None = Field(default=None, alias="BACKUP_ENDPOINT_URL")
    backup_region: str = Field(default="auto", alias="BACKUP_REGION")
    backup_access_key_id: str | None = Field(default=None, alias="BACKUP_ACCESS_KEY_ID")
    backup_secret_access_key: str | None = Field(default=None, alias="BACKUP_SECRET_ACCESS_KEY")

    # Secrets
    env_var_encryption_key: str | None = Field(default=None, alias="ENV_VAR_ENCRYPTION_KEY")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str | None) -> str:
        """Normalize log level value from environment."""
        if value is None:
            return "INFO"
        normalized = str(value).strip().upper()
        if normalized in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return normalized
        raise ValueError("LOG_LEVEL must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL")

    @model_validator(mode="after")
    def check_lock_ttl_covers_budget(self) -> "Settings":
        # Lock TTL must outlive the ensure budget.
        if self.sandbox_lock_ttl_seconds <= self.sandbox_ensure_budget_seconds:
            raise ValueError(
                "SANDBOX_LOCK_TTL_SECONDS must exceed SANDBOX_ENSURE_BUDGET_SECONDS "
                f"({self.sandbox_lock_ttl_seconds} <= {self.sandbox_ensure_budget_seconds})"
            )
        if self.sandbox_lock_wait_seconds >= self.sandbox_ensure_budget_seconds:
            raise ValueError("SANDBOX_LOCK_WAIT_SECONDS must be shorter than the ensure budget")
        return self

    @property
    def postgres_url(self) -> str:
        """Get PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/0"
        return f"redis://{self.redis_host}:{self.redis_port}/0"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
