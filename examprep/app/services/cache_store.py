"""Best-effort cache-aside store with metrics and a health check.

Every operation catches backend errors, records them in the metrics and
returns a safe default. A cache failure never fails the caller's request.

Usage:
    store = CacheStore(backend)
    domains = await store.get_or_set(
        CacheKeys.domains_all(), load_domains, ttl=CacheTTL.DOMAINS_LIST
    )
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Optional, TypeVar

from examprep.app.core.cache import CacheBackend
from examprep.app.core.logging import get_log_context, get_logger
from examprep.app.services.cache_writer import CacheWriteQueue

logger = get_logger(__name__)

T = TypeVar("T")

ConnectionStatus = Literal["connected", "disconnected", "unknown"]

HEALTH_CHECK_KEY = "__health_check__"
HEALTH_CHECK_TTL_SECONDS = 5


@dataclass
class CacheMetrics:
    """Cache counters plus connection state.

    ``hit_rate`` and ``total_operations`` are derived from hits and misses.
    """
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    connection_status: ConnectionStatus = "unknown"
    last_error: Optional[str] = None
    last_error_time: Optional[float] = None

    @property
    def total_operations(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Hit rate as a percentage of reads."""
        total = self.total_operations
        return (self.hits / total) * 100 if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "errors": self.errors,
            "hit_rate": round(self.hit_rate, 2),
            "hit_rate_formatted": f"{self.hit_rate:.2f}%",
            "total_operations": self.total_operations,
            "connection_status": self.connection_status,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time,
        }


@dataclass
class ConnectionHealth:
    """Result of a cache round-trip check."""
    healthy: bool
    latency_ms: float
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "healthy": self.healthy,
            "latency_ms": self.latency_ms,
            "latency_formatted": f"{self.latency_ms:.2f}ms",
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class CacheStore:
    """Best-effort get/set/delete/pattern-delete/get-or-compute over a backend.

    A store built without a backend is disabled: every operation is a no-op
    returning the safe default (None / False / 0).

    Values are JSON-serialized, so anything stored must be JSON-compatible.
    """

    def __init__(
        self,
        backend: Optional[CacheBackend],
        default_ttl: Optional[int] = None,
        write_queue_size: int = 1000,
        scan_count: int = 100,
    ) -> None:
        """Initialize the cache store.

        Args:
            backend: Key-value backend; None disables caching
            default_ttl: TTL in seconds applied when a caller passes none
            write_queue_size: Bound on pending background writes
            scan_count: Keys examined per scan step in delete_pattern
        """
        self._backend = backend
        self._default_ttl = default_ttl
        self._scan_count = scan_count
        self._metrics = self._fresh_metrics()
        self.writes = CacheWriteQueue(self.set, max_size=write_queue_size)

    @property
    def is_enabled(self) -> bool:
        return self._backend is not None

    @property
    def backend(self) -> Optional[CacheBackend]:
        return self._backend

    def _fresh_metrics(self) -> CacheMetrics:
        return CacheMetrics(
            connection_status="unknown" if self.is_enabled else "disconnected"
        )

    def _record_error(self, operation: str, key: str, error: Exception) -> None:
        message = str(error) or type(error).__name__
        self._metrics.errors += 1
        self._metrics.connection_status = "disconnected"
        self._metrics.last_error = message
        self._metrics.last_error_time = time.time()
        logger.error(
            f"Cache {operation} error for key {key}: {message}",
            extra=get_log_context(cache_key=key, operation=operation),
        )

    async def get(self, key: str) -> Optional[Any]:
        """Get a value; None on miss, disabled cache or error."""
        if self._backend is None:
            return None

        try:
            raw = await self._backend.get(key)
        except Exception as e:
            self._record_error("GET", key, e)
            return None

        self._metrics.connection_status = "connected"
        if raw is None:
            self._metrics.misses += 1
            return None

        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            # Unreadable entry, treat as miss
            logger.warning(
                f"Discarding undecodable cache entry: {e}",
                extra=get_log_context(cache_key=key),
            )
            self._metrics.misses += 1
            return None

        self._metrics.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store a value with an optional TTL in seconds.

        Returns:
            True if stored, False on disabled cache or error.
        """
        if self._backend is None:
            return False

        effective_ttl = ttl if ttl is not None else self._default_ttl
        try:
            data = json.dumps(value, ensure_ascii=False).encode("utf-8")
            await self._backend.set(key, data, ttl=effective_ttl)
        except Exception as e:
            self._record_error("SET", key, e)
            return False

        self._metrics.sets += 1
        self._metrics.connection_status = "connected"
        return True

    async def delete(self, key: str) -> bool:
        """Delete one key. Returns True when the backend accepted the call."""
        if self._backend is None:
            return False

        try:
            await self._backend.delete(key)
        except Exception as e:
            self._record_error("DEL", key, e)
            return False

        self._metrics.deletes += 1
        self._metrics.connection_status = "connected"
        return True

    async def delete_many(self, keys: list[str]) -> bool:
        """Delete several keys in one backend call."""
        if self._backend is None or not keys:
            return False

        try:
            await self._backend.delete_many(keys)
        except Exception as e:
            self._record_error("DEL", ",".join(keys), e)
            return False

        self._metrics.deletes += len(keys)
        self._metrics.connection_status = "connected"
        return True

    async def delete_pattern(self, pattern: str) -> Optional[int]:
        """Delete every key matching a glob pattern.

        Scans with a cursor until the store reports the terminal cursor, then
        deletes all matched keys in one batch.

        Returns:
            Number of keys deleted, 0 on a disabled cache, or None when the
            scan or delete failed.
        """
        if self._backend is None:
            return 0

        try:
            keys: list[str] = []
            cursor: Any = 0
            while True:
                cursor, batch = await self._backend.scan(
                    cursor, match=pattern, count=self._scan_count
                )
                keys.extend(batch)
                if _is_terminal_cursor(cursor):
                    break

            # A key can be reported twice when the keyspace is rehashed mid-scan
            keys = list(dict.fromkeys(keys))
            if keys:
                await self._backend.delete_many(keys)
        except Exception as e:
            self._record_error("DEL pattern", pattern, e)
            return None

        self._metrics.deletes += len(keys)
        self._metrics.connection_status = "connected"
        logger.debug(
            f"Deleted {len(keys)} keys matching pattern",
            extra=get_log_context(cache_key=pattern),
        )
        return len(keys)

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
    ) -> T:
        """Return the cached value, or compute it and schedule a cache write.

        On a miss the fetcher runs exactly once and its result is returned
        immediately; populating the cache happens on the background write
        queue. Errors raised by the fetcher propagate.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        data = await fetcher()

        if self._backend is not None and data is not None:
            self.writes.submit(key, data, ttl)

        return data

    async def check_health(self) -> ConnectionHealth:
        """Check the backend with a set/get/delete round trip."""
        if self._backend is None:
            return ConnectionHealth(
                healthy=False, latency_ms=0.0, error="Cache not configured"
            )

        start = time.perf_counter()
        try:
            await self._backend.set(
                HEALTH_CHECK_KEY, b"ping", ttl=HEALTH_CHECK_TTL_SECONDS
            )
            value = await self._backend.get(HEALTH_CHECK_KEY)
            await self._backend.delete(HEALTH_CHECK_KEY)
        except Exception as e:
            latency = round((time.perf_counter() - start) * 1000, 2)
            message = str(e) or type(e).__name__
            self._metrics.connection_status = "disconnected"
            self._metrics.last_error = message
            self._metrics.last_error_time = time.time()
            logger.warning(f"Cache health check failed: {message}")
            return ConnectionHealth(healthy=False, latency_ms=latency, error=message)

        latency = round((time.perf_counter() - start) * 1000, 2)
        self._metrics.connection_status = "connected"
        return ConnectionHealth(healthy=value == b"ping", latency_ms=latency)

    def get_metrics(self) -> CacheMetrics:
        """Return a copy of the current metrics."""
        m = self._metrics
        return CacheMetrics(
            hits=m.hits,
            misses=m.misses,
            sets=m.sets,
            deletes=m.deletes,
            errors=m.errors,
            connection_status=m.connection_status,
            last_error=m.last_error,
            last_error_time=m.last_error_time,
        )

    def reset_metrics(self) -> None:
        self._metrics = self._fresh_metrics()

    async def close(self) -> None:
        """Drain background writes and close the backend."""
        await self.writes.shutdown()
        if self._backend is not None:
            await self._backend.close()


def _is_terminal_cursor(cursor: Any) -> bool:
    """redis-py returns an int cursor; REST-style clients return "0"."""
    if isinstance(cursor, bytes):
        cursor = cursor.decode("ascii")
    try:
        return int(cursor) == 0
    except (TypeError, ValueError):
        return False
