"""Key-value backend layer for examprep.

Provides a pluggable backend abstraction over the remote key-value store with
in-memory and Redis implementations. Backends raise on failure; degradation
policy lives one level up in ``CacheStore`` and ``RateLimiter``.
"""

import asyncio
import bisect
import fnmatch
import math
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Optional

import redis.asyncio as aioredis

from examprep.app.core.config import Settings
from examprep.app.core.logging import get_logger
from examprep.app.core.redis_lua import SLIDING_WINDOW_SCRIPT

logger = get_logger(__name__)


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: bytes
    expires_at: Optional[float] = None

    def is_expired(self) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return time.time() > self.expires_at


@dataclass
class _WindowEntry:
    """Internal request log for one sliding window key."""

    timestamps: list[int] = field(default_factory=list)
    expires_at: Optional[float] = None

    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return time.time() > self.expires_at


@dataclass
class SlidingWindowState:
    """Outcome of one atomic sliding window hit.

    Attributes:
        allowed: Whether the request was recorded in the window
        count: Number of requests in the window after the call
        oldest_ms: Oldest retained timestamp in the window (ms)
    """

    allowed: bool
    count: int
    oldest_ms: int


def window_ttl_seconds(window_ms: int) -> int:
    """TTL for a request log: the window length, rounded up to whole seconds."""
    return max(1, math.ceil(window_ms / 1000))


class CacheBackend(ABC):
    """Abstract base class for key-value backends.

    All backend implementations must inherit from this class and implement
    the abstract methods. Every method may raise; callers decide how to
    degrade.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Retrieve a value.

        Args:
            key: The key to look up.

        Returns:
            The stored value as bytes, or None if not found or expired.
        """

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        """Store a value.

        Args:
            key: The key.
            value: The value to store (as bytes).
            ttl: Time-to-live in seconds. None stores without expiry.
        """

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Remove a key. Returns the number of keys removed."""

    @abstractmethod
    async def delete_many(self, keys: list[str]) -> int:
        """Remove several keys in one call. Returns the number removed."""

    @abstractmethod
    async def scan(
        self, cursor: Any, match: str, count: int = 100
    ) -> tuple[Any, list[str]]:
        """One step of a cursor-based key scan.

        Args:
            cursor: Continuation token; 0 starts a new scan.
            match: Glob pattern keys must match.
            count: Hint for how many keys to examine per step.

        Returns:
            Tuple of (next cursor, matched keys). A zero cursor ends the scan.
        """

    @abstractmethod
    async def sliding_window_hit(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        max_requests: int,
        member: str,
    ) -> SlidingWindowState:
        """Atomically prune, count and (if under the limit) record a request.

        Args:
            key: Request log key.
            now_ms: Current time in milliseconds.
            window_ms: Window length in milliseconds.
            max_requests: Maximum requests allowed in the window.
            member: Unique member name for this request.
        """

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCache(CacheBackend):
    """In-memory backend with TTL support.

    Used by tests and as the process-local ledger for the rate limiter when no
    Redis URL is configured.

    Memory is bounded: expired entries are purged when a new key is written
    and at least ``cleanup_interval`` seconds have passed since the last
    purge, and request logs are kept in LRU order with at most
    ``max_window_entries`` of them.

    Note: This backend is not distributed and data is lost when the
    application restarts.
    """

    DEFAULT_MAX_WINDOW_ENTRIES = 10000
    DEFAULT_CLEANUP_INTERVAL = 1.0

    def __init__(
        self,
        max_window_entries: int = DEFAULT_MAX_WINDOW_ENTRIES,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        """Initialize the in-memory backend.

        Args:
            max_window_entries: Request logs kept before LRU eviction
            cleanup_interval: Minimum seconds between expiry sweeps
        """
        if max_window_entries < 1:
            raise ValueError("max_window_entries must be at least 1")
        self._data: dict[str, _CacheEntry] = {}
        self._windows: OrderedDict[str, _WindowEntry] = OrderedDict()
        self._max_window_entries = max_window_entries
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = time.time()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.is_expired():
                del self._data[key]
                return None
            return entry.value

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        async with self._lock:
            expires_at = time.time() + ttl if ttl and ttl > 0 else None
            self._windows.pop(key, None)
            if key not in self._data:
                self._maybe_purge_expired()
            self._data[key] = _CacheEntry(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> int:
        async with self._lock:
            return self._remove(key)

    async def delete_many(self, keys: list[str]) -> int:
        async with self._lock:
            return sum(self._remove(key) for key in keys)

    def _remove(self, key: str) -> int:
        removed = 0
        if self._data.pop(key, None) is not None:
            removed = 1
        if self._windows.pop(key, None) is not None:
            removed = 1
        return removed

    async def scan(
        self, cursor: Any, match: str, count: int = 100
    ) -> tuple[int, list[str]]:
        """Scan a sorted snapshot of live keys; the cursor is an offset."""
        async with self._lock:
            self._purge_expired()
            all_keys = sorted(set(self._data) | set(self._windows))
        start = int(cursor)
        batch = all_keys[start:start + count]
        next_cursor = start + count
        if next_cursor >= len(all_keys):
            next_cursor = 0
        return next_cursor, [k for k in batch if fnmatch.fnmatchcase(k, match)]

    async def sliding_window_hit(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        max_requests: int,
        member: str,
    ) -> SlidingWindowState:
        async with self._lock:
            entry = self._windows.get(key)
            if entry is None or entry.is_expired():
                self._maybe_purge_expired()
                entry = _WindowEntry()
                self._windows[key] = entry
                self._enforce_lru_limit()
            self._windows.move_to_end(key)

            cutoff = now_ms - window_ms
            entry.timestamps = [ts for ts in entry.timestamps if ts > cutoff]

            if len(entry.timestamps) >= max_requests:
                return SlidingWindowState(
                    allowed=False,
                    count=len(entry.timestamps),
                    oldest_ms=entry.timestamps[0],
                )

            bisect.insort(entry.timestamps, now_ms)
            entry.expires_at = time.time() + window_ttl_seconds(window_ms)
            return SlidingWindowState(
                allowed=True,
                count=len(entry.timestamps),
                oldest_ms=entry.timestamps[0],
            )

    async def clear(self) -> None:
        """Clear all entries."""
        async with self._lock:
            self._data.clear()
            self._windows.clear()

    async def cleanup_expired(self) -> int:
        """Remove all expired entries and request logs.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            return self._purge_expired()

    def _purge_expired(self) -> int:
        expired_data = [k for k, e in self._data.items() if e.is_expired()]
        for key in expired_data:
            del self._data[key]
        expired_windows = [k for k, e in self._windows.items() if e.is_expired()]
        for key in expired_windows:
            del self._windows[key]
        self._last_cleanup = time.time()
        return len(expired_data) + len(expired_windows)

    def _maybe_purge_expired(self) -> None:
        if time.time() - self._last_cleanup >= self._cleanup_interval:
            self._purge_expired()

    def _enforce_lru_limit(self) -> None:
        """Evict the least recently used request logs past the limit."""
        if len(self._windows) > self._max_window_entries:
            # Drop the oldest 20% at once
            remove_count = max(1, int(self._max_window_entries * 0.2))
            for _ in range(remove_count):
                self._windows.popitem(last=False)


class RedisCache(CacheBackend):
    """Redis-based backend.

    Example:
        >>> cache = RedisCache("redis://localhost:6379/0")
        >>> await cache.set("key", b"value", ttl=300)
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[Any] = None,
        socket_timeout: float = 5.0,
    ) -> None:
        """Initialize the Redis backend.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            redis_client: Pre-built client, mainly for tests
            socket_timeout: Socket timeout in seconds for new clients
        """
        if redis_client is None and not redis_url:
            raise ValueError("RedisCache needs either redis_url or redis_client")
        self._redis_url = redis_url
        self._redis = redis_client
        self._socket_timeout = socket_timeout

    def _get_client(self) -> Any:
        """Get or create the Redis client connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        return self._redis

    async def get(self, key: str) -> Optional[bytes]:
        client = self._get_client()
        return await client.get(key)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        client = self._get_client()
        if ttl:
            await client.set(key, value, ex=ttl)
        else:
            await client.set(key, value)

    async def delete(self, key: str) -> int:
        client = self._get_client()
        return int(await client.delete(key))

    async def delete_many(self, keys: list[str]) -> int:
        if not keys:
            return 0
        client = self._get_client()
        return int(await client.delete(*keys))

    async def scan(
        self, cursor: Any, match: str, count: int = 100
    ) -> tuple[Any, list[str]]:
        client = self._get_client()
        next_cursor, keys = await client.scan(cursor=cursor, match=match, count=count)
        return next_cursor, [
            k.decode("utf-8") if isinstance(k, bytes) else k for k in keys
        ]

    async def sliding_window_hit(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        max_requests: int,
        member: str,
    ) -> SlidingWindowState:
        client = self._get_client()
        result = await client.eval(
            SLIDING_WINDOW_SCRIPT,
            1,  # Number of keys
            key,  # KEYS[1]
            now_ms,  # ARGV[1]
            window_ms,  # ARGV[2]
            max_requests,  # ARGV[3]
            window_ttl_seconds(window_ms),  # ARGV[4]
            member,  # ARGV[5]
        )
        return SlidingWindowState(
            allowed=bool(int(result[0])),
            count=int(result[1]),
            oldest_ms=int(result[2]),
        )

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_cache_backend(settings: Settings) -> Optional[CacheBackend]:
    """Build the shared store backend from settings.

    Returns:
        A RedisCache when a Redis URL is configured, otherwise None, which
        disables the cache store.
    """
    if not settings.cache_enabled:
        logger.warning("Redis cache is not configured. Caching will be disabled.")
        return None
    logger.info("Using Redis cache backend")
    return RedisCache(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
