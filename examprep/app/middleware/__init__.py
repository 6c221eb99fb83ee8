"""Middleware package for the examprep application."""

from examprep.app.middleware.rate_limit import RateLimitDependency
from examprep.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitDependency",
    "RequestIdMiddleware",
    "get_request_id",
]
