"""Sliding window rate limiting.

Provides the limiter itself, its named presets, response header derivation
and a FastAPI dependency that applies a preset to a route.
"""

from examprep.app.middleware.rate_limit.dependency import (
    RateLimitDependency,
    RateLimitHeadersMiddleware,
    get_client_ip,
    get_rate_limit_identifier,
)
from examprep.app.middleware.rate_limit.limiter import (
    RateLimiter,
    apply_rate_limit,
    get_rate_limit_headers,
)
from examprep.app.middleware.rate_limit.models import (
    FailurePolicy,
    RateLimitConfig,
    RateLimitPresets,
    RateLimitResult,
)

__all__ = [
    # Models
    "FailurePolicy",
    "RateLimitConfig",
    "RateLimitPresets",
    "RateLimitResult",
    # Limiter
    "RateLimiter",
    "apply_rate_limit",
    "get_rate_limit_headers",
    # FastAPI integration
    "RateLimitDependency",
    "RateLimitHeadersMiddleware",
    "get_client_ip",
    "get_rate_limit_identifier",
]
