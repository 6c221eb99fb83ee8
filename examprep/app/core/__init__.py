"""Core utilities for the examprep application."""

from examprep.app.core.cache import (
    CacheBackend,
    InMemoryCache,
    RedisCache,
    SlidingWindowState,
    create_cache_backend,
)
from examprep.app.core.config import Settings, get_settings
from examprep.app.core.logging import get_logger, setup_logging

__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
    "SlidingWindowState",
    "create_cache_backend",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
