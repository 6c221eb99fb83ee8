"""Sliding window rate limiter backed by the shared key-value store.

Each identifier (``user:<id>``, ``ip:<addr>``) owns a request log of
timestamps. A check prunes entries older than the window, then either denies
or records the request. The whole sequence runs as one atomic backend call
(a Lua script on Redis), so concurrent checks cannot overshoot the limit.
"""

import math
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

import redis

from examprep.app.core.cache import CacheBackend
from examprep.app.core.logging import get_log_context, get_logger
from examprep.app.middleware.rate_limit.models import (
    FailurePolicy,
    RateLimitConfig,
    RateLimitResult,
)

logger = get_logger(__name__)

# Retry-After sent when the store is down and the policy is fail-closed
FAIL_CLOSED_RETRY_AFTER_SECONDS = 60


class RateLimiter:
    """Sliding window admission control for one configuration.

    Example:
        >>> limiter = RateLimiter(backend, RateLimitPresets.AUTH, FailurePolicy.FAIL_CLOSED)
        >>> result = await limiter.check("user:42")
        >>> if not result.success:
        ...     raise RateLimitExceededError(result)
    """

    def __init__(
        self,
        backend: CacheBackend,
        config: RateLimitConfig,
        failure_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the rate limiter.

        Args:
            backend: Store holding the request logs
            config: Window length and request budget
            failure_policy: Decision returned when the store errors
            clock: Source of the current time in seconds
        """
        self._backend = backend
        self.config = config
        self.failure_policy = failure_policy
        self._clock = clock

    def _make_key(self, identifier: str) -> str:
        return f"{self.config.key_prefix}:{identifier}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check(self, identifier: str) -> RateLimitResult:
        """Check and, if admitted, record a request for ``identifier``."""
        key = self._make_key(identifier)
        now = self._now_ms()
        max_requests = self.config.max_requests
        window_ms = self.config.window_ms

        try:
            state = await self._backend.sliding_window_hit(
                key,
                now_ms=now,
                window_ms=window_ms,
                max_requests=max_requests,
                member=f"{now}-{uuid.uuid4().hex}",
            )
        except redis.RedisError as e:
            logger.error(
                f"Rate limiter store error: {e}",
                extra=get_log_context(identifier=identifier),
            )
            return self._handle_store_failure(identifier, now)
        except Exception as e:
            logger.exception(
                f"Unexpected rate limiter error: {e}",
                extra=get_log_context(identifier=identifier),
            )
            return self._handle_store_failure(identifier, now)

        if not state.allowed:
            reset_time = state.oldest_ms + window_ms
            retry_after = math.ceil((reset_time - now) / 1000)
            return RateLimitResult(
                success=False,
                limit=max_requests,
                remaining=0,
                reset=reset_time,
                retry_after=retry_after if retry_after > 0 else 1,
            )

        return RateLimitResult(
            success=True,
            limit=max_requests,
            remaining=max(0, max_requests - state.count),
            reset=now + window_ms,
        )

    def _handle_store_failure(self, identifier: str, now: int) -> RateLimitResult:
        """Apply the configured failure policy."""
        max_requests = self.config.max_requests
        reset_time = now + self.config.window_ms

        if self.failure_policy is FailurePolicy.FAIL_OPEN:
            logger.warning(
                "Rate limiting fail-open triggered. "
                "Request allowed without rate limit check.",
                extra=get_log_context(identifier=identifier),
            )
            return RateLimitResult(
                success=True,
                limit=max_requests,
                remaining=max_requests,
                reset=reset_time,
            )

        logger.error(
            "Rate limiting fail-closed triggered. Request denied.",
            extra=get_log_context(identifier=identifier),
        )
        return RateLimitResult(
            success=False,
            limit=max_requests,
            remaining=0,
            reset=reset_time,
            retry_after=FAIL_CLOSED_RETRY_AFTER_SECONDS,
        )

    async def reset(self, identifier: str) -> bool:
        """Forget every recorded request for ``identifier``."""
        key = self._make_key(identifier)
        try:
            await self._backend.delete(key)
        except Exception as e:
            logger.error(
                f"Failed to reset rate limit: {e}",
                extra=get_log_context(identifier=identifier),
            )
            return False
        return True


async def apply_rate_limit(
    identifier: str,
    config: RateLimitConfig,
    backend: CacheBackend,
    failure_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED,
) -> tuple[bool, RateLimitResult]:
    """One-shot check helper returning ``(allowed, result)``."""
    limiter = RateLimiter(backend, config, failure_policy)
    result = await limiter.check(identifier)
    return result.success, result


def format_reset_time(reset_ms: int) -> str:
    """Epoch milliseconds to ISO-8601 UTC, e.g. 2026-10-19T12:00:00.000Z."""
    moment = datetime.fromtimestamp(reset_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def get_rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Standard rate limit response headers for a check result.

    ``Retry-After`` is only present on denied checks.
    """
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": format_reset_time(result.reset),
    }
    if not result.success and result.retry_after:
        headers["Retry-After"] = str(result.retry_after)
    return headers
