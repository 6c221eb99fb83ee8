"""Caching, invalidation and query monitoring services."""

from examprep.app.services.cache_invalidation import CacheInvalidation, safe_invalidate
from examprep.app.services.cache_keys import CacheKeys, CacheTTL
from examprep.app.services.cache_store import CacheMetrics, CacheStore, ConnectionHealth
from examprep.app.services.cache_writer import CacheWriteQueue
from examprep.app.services.query_monitor import QueryMonitor, is_retryable_error

__all__ = [
    "CacheInvalidation",
    "safe_invalidate",
    "CacheKeys",
    "CacheTTL",
    "CacheMetrics",
    "CacheStore",
    "ConnectionHealth",
    "CacheWriteQueue",
    "QueryMonitor",
    "is_retryable_error",
]
