"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Both the branch server and the
terminal-side sync client read their knobs from here.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # ==========================================================================
    # Server: branch stores
    # ==========================================================================
    # Each branch gets its own physically isolated database
    branch_database_url_template: str = "sqlite:///./data/branch_{branch_id}.db"

    # Security
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240  # 4 hours

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    # ==========================================================================
    # Server: sync ledger
    # ==========================================================================
    sync_max_batch_items: int = 100
    sync_max_clock_skew_seconds: int = 300

    # ==========================================================================
    # Client: terminal-side durable queue and dispatcher
    # ==========================================================================
    sync_server_url: str = "http://localhost:8000"
    sync_access_token: Optional[str] = None
    sync_queue_database_url: str = "sqlite:///./data/offline_queue.db"
    sync_batch_size: int = 10
    sync_max_retries: int = 3
    sync_retry_delays: str = "1,5,15"  # seconds, indexed by retry count
    sync_interval_seconds: float = 30.0
    sync_request_timeout_seconds: float = 10.0
    sync_health_path: str = "/health"

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if v == "change-me-in-production" or len(v) < 32:
            import warnings
            warnings.warn(
                "SECRET_KEY should be set to a random value of at least 32 characters.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator("sync_retry_delays")
    @classmethod
    def validate_retry_delays(cls, v: str) -> str:
        try:
            delays = [float(d) for d in v.split(",") if d.strip()]
        except ValueError:
            raise ValueError(f"SYNC_RETRY_DELAYS must be comma-separated seconds, got {v!r}")
        if not delays or any(d < 0 for d in delays):
            raise ValueError("SYNC_RETRY_DELAYS must contain at least one non-negative value")
        return v

    @field_validator("sync_batch_size", "sync_max_retries", "sync_max_batch_items")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production safety."""
        if not self.debug:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "FATAL: Cannot start in production mode with default SECRET_KEY. "
                    "Set a secure SECRET_KEY environment variable (minimum 32 characters)."
                )
            if len(self.secret_key) < 32:
                raise ValueError(
                    f"FATAL: SECRET_KEY must be at least 32 characters in production mode "
                    f"(current length: {len(self.secret_key)})."
                )
        if "{branch_id}" not in self.branch_database_url_template:
            raise ValueError("BRANCH_DATABASE_URL_TEMPLATE must contain a {branch_id} placeholder")
        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def sync_retry_delays_list(self) -> List[float]:
        """Backoff schedule in seconds, indexed by ``retry_count - 1``."""
        return [float(d) for d in self.sync_retry_delays.split(",") if d.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
