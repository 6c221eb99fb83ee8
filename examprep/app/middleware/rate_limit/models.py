"""Rate limiting data models.

This module contains dataclasses for rate limit configuration and results,
the named presets, and the storage failure policy.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FailurePolicy(str, Enum):
    """What a check returns when the backing store errors.

    FAIL_OPEN allows the request (local development only); FAIL_CLOSED
    denies it so limiting is never silently disabled in a deployment.
    """
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"

    @classmethod
    def for_environment(
        cls, environment: str, override: Optional[str] = None
    ) -> "FailurePolicy":
        """Explicit override wins; otherwise only development fails open."""
        if override:
            return cls(override)
        if environment == "development":
            return cls.FAIL_OPEN
        return cls.FAIL_CLOSED


@dataclass(frozen=True)
class RateLimitConfig:
    """Sliding window size and the number of requests it admits."""
    max_requests: int
    window_ms: int
    key_prefix: str = "ratelimit"

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_ms < 1:
            raise ValueError("window_ms must be at least 1")


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        success: Whether the request is admitted
        limit: Maximum requests per window
        remaining: Requests left in the current window
        reset: Epoch milliseconds when a slot frees up
        retry_after: Seconds to wait before retrying (denied checks only)
    """
    success: bool
    limit: int
    remaining: int
    reset: int
    retry_after: Optional[int] = None


class RateLimitPresets:
    """Named configurations shared by route handlers."""

    # 10 requests per minute
    STRICT = RateLimitConfig(max_requests=10, window_ms=60 * 1000)
    # 60 requests per minute
    STANDARD = RateLimitConfig(max_requests=60, window_ms=60 * 1000)
    # 100 requests per minute
    GENEROUS = RateLimitConfig(max_requests=100, window_ms=60 * 1000)
    # 5 attempts per 15 minutes (login, password reset)
    AUTH = RateLimitConfig(max_requests=5, window_ms=15 * 60 * 1000)
    # 1000 requests per hour
    API = RateLimitConfig(max_requests=1000, window_ms=60 * 60 * 1000)

    @classmethod
    def get(cls, name: str) -> RateLimitConfig:
        """Look up a preset by name ("strict", "standard", ...)."""
        preset = getattr(cls, name.upper(), None)
        if not isinstance(preset, RateLimitConfig):
            raise KeyError(f"Unknown rate limit preset: {name}")
        return preset
