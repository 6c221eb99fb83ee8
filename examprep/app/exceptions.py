"""Custom exceptions for the examprep application."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from examprep.app.middleware.rate_limit.models import RateLimitResult


class AppException(Exception):
    """Base class for application exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Application error"):
        self.message = message
        super().__init__(message)


class ConnectivityError(AppException):
    """Raised when a backend cannot be reached.

    Always classified as retryable by the query monitor.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, message: str = "Backend connection failed"):
        super().__init__(message)


class RateLimitExceededError(AppException):
    """Raised by the HTTP rate limit dependency when a check is denied.

    ``RateLimiter.check`` itself never raises for a denial; it returns a
    result with ``success=False``.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: "RateLimitResult"):
        self.result = result
        self.retry_after = result.retry_after
        super().__init__(
            f"Rate limit exceeded. Please try again in {result.retry_after} seconds."
        )
