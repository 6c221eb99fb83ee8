from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Deployment environment - drives the rate limiter failure policy default
    environment: Literal["development", "test", "staging", "production"] = (
        "production"
    )

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings. An empty URL disables the cache store entirely.
    redis_url: str = ""
    redis_socket_timeout: float = 5.0

    # Cache settings
    cache_default_ttl: Optional[int] = None  # None = no expiry unless caller passes one
    cache_write_queue_size: int = 1000
    cache_scan_count: int = 100

    # Rate limiting settings
    rate_limit_key_prefix: str = "ratelimit"
    # "fail_open" | "fail_closed"; None = derive from environment
    rate_limit_failure_policy: Optional[Literal["fail_open", "fail_closed"]] = None

    # Database settings (only used for health checks and diagnostics)
    database_url: str = Field(default="", validation_alias="DATABASE_URL")
    db_command_timeout: float = 30.0

    # Query monitor settings
    query_slow_threshold_ms: float = 5000.0
    query_metrics_capacity: int = 100
    query_max_retries: int = 3
    query_retry_base_delay_ms: float = 1000.0

    @property
    def cache_enabled(self) -> bool:
        """Caching is enabled only when a store connection is configured."""
        return bool(self.redis_url.strip())

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @field_validator(
        "cache_write_queue_size",
        "cache_scan_count",
        "query_metrics_capacity",
        "query_max_retries",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate size and count values are positive."""
        if v < 1:
            raise ValueError("size and count values must be at least 1")
        return v

    @field_validator(
        "redis_socket_timeout",
        "db_command_timeout",
        "query_slow_threshold_ms",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("query_retry_base_delay_ms")
    @classmethod
    def validate_delay_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("query_retry_base_delay_ms must not be negative")
        return v

    @field_validator("cache_default_ttl")
    @classmethod
    def validate_default_ttl(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("cache_default_ttl must be at least 1 second")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process settings, loaded once.

    Services never read this directly; it is consumed by the application
    factory which passes explicit values into each service.
    """
    return Settings()
