"""Query monitoring, retry with backoff, and database diagnostics.

Wraps opaque async database operations, recording one ``QueryMetric`` per
call into a bounded ring buffer. The retrying variant re-runs operations
that failed for connectivity reasons with linear backoff.

Usage:
    monitor = QueryMonitor()
    rows = await monitor.monitored_query_with_retry(
        "list_decks", lambda: session.execute(select(Deck))
    )
"""

import asyncio
import errno
import socket
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from examprep.app.core.logging import get_log_context, get_logger
from examprep.app.exceptions import ConnectivityError

logger = get_logger(__name__)

T = TypeVar("T")

SLOW_QUERY_THRESHOLD_MS = 5000
DEFAULT_METRICS_CAPACITY = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DIAGNOSTICS_RECENT_LIMIT = 10

RETRYABLE_ERROR_CODES = frozenset({"ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND"})
RETRYABLE_ERRNOS = frozenset({errno.ECONNREFUSED, errno.ETIMEDOUT})
RETRYABLE_MESSAGE_MARKERS = (
    "CONNECT_TIMEOUT",
    "Connection terminated",
    "Connection closed",
)

POSTGRES_STATS_QUERY = text(
    """
    SELECT
        current_database() AS database,
        pg_database_size(current_database()) AS size_bytes,
        (SELECT count(*) FROM pg_stat_activity
         WHERE datname = current_database()) AS active_connections,
        (SELECT count(*) FROM pg_stat_activity
         WHERE datname = current_database() AND state = 'idle') AS idle_connections
    """
)


def _utc_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def is_retryable_error(error: BaseException) -> bool:
    """Whether a failed query is worth retrying.

    Only connectivity failures qualify: refused or timed out connections,
    DNS failures, and connections dropped by the server. Anything else (bad
    SQL, constraint violations, application errors) is permanent.
    """
    if isinstance(error, (ConnectivityError, ConnectionRefusedError, TimeoutError)):
        return True
    # asyncio.TimeoutError is an alias of TimeoutError only on 3.11+
    if isinstance(error, asyncio.TimeoutError):
        return True
    if isinstance(error, socket.gaierror):
        return True
    if isinstance(error, OSError) and error.errno in RETRYABLE_ERRNOS:
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True

    code = getattr(error, "code", None)
    if isinstance(code, str) and code in RETRYABLE_ERROR_CODES:
        return True

    message = str(error)
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


@dataclass
class QueryMetric:
    """One monitored call.

    Attributes:
        name: Query name given by the caller
        start_time: Epoch seconds when the first attempt started
        end_time: Epoch seconds when the call finished
        duration_ms: Wall time across all attempts
        success: Whether the call returned a value
        error: Message of the final error, if any
        retry_count: Attempts beyond the first
    """
    name: str
    start_time: float
    end_time: float
    duration_ms: float
    success: bool
    error: Optional[str] = None
    retry_count: int = 0
    slow_threshold_ms: float = SLOW_QUERY_THRESHOLD_MS

    @property
    def slow(self) -> bool:
        return self.duration_ms > self.slow_threshold_ms

    def to_dict(self) -> dict:
        data = asdict(self)
        del data["slow_threshold_ms"]
        data["slow"] = self.slow
        return data


@dataclass
class QueryStatistics:
    """Aggregates over the metrics buffer, recomputed on each request."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    failure_rate: float = 0.0
    avg_duration_ms: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    slow_queries: int = 0
    queries_with_retries: int = 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "failure_rate": round(self.failure_rate, 2),
            "failure_rate_formatted": f"{self.failure_rate:.2f}%",
            "avg_duration_ms": round(self.avg_duration_ms, 2),
            "min_duration_ms": round(self.min_duration_ms, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "slow_queries": self.slow_queries,
            "queries_with_retries": self.queries_with_retries,
        }


@dataclass
class DatabaseHealth:
    """Result of a ``SELECT 1`` round trip."""
    connected: bool
    response_time_ms: float
    error: Optional[str]
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


class QueryMonitor:
    """Records per-query metrics and retries transient connectivity failures.

    Each instance owns its own ring buffer; the application keeps one on its
    service container.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_METRICS_CAPACITY,
        slow_threshold_ms: float = SLOW_QUERY_THRESHOLD_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize the monitor.

        Args:
            capacity: Number of metrics kept; the oldest is dropped first
            slow_threshold_ms: Duration above which a query counts as slow
            max_retries: Default attempt limit for monitored_query_with_retry
            base_delay_ms: Default backoff unit in milliseconds
            sleep: Coroutine used for backoff waits
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.capacity = capacity
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.slow_threshold_ms = slow_threshold_ms
        self._sleep = sleep
        self._metrics: Deque[QueryMetric] = deque(maxlen=capacity)

    def record(self, metric: QueryMetric) -> None:
        """Append a metric, logging slow and failed queries."""
        self._metrics.append(metric)
        context = get_log_context(
            query_name=metric.name,
            duration_ms=round(metric.duration_ms, 2),
            retry_count=metric.retry_count,
        )

        if metric.slow:
            logger.warning(
                f"Slow query detected: {metric.name} took {metric.duration_ms:.2f}ms",
                extra=context,
            )
        if not metric.success:
            logger.error(
                f"Query failed: {metric.name}: {metric.error}",
                extra=context,
            )

    def _finish(
        self,
        name: str,
        start_time: float,
        started: float,
        success: bool,
        error: Optional[BaseException] = None,
        retry_count: int = 0,
    ) -> QueryMetric:
        metric = QueryMetric(
            name=name,
            start_time=start_time,
            end_time=time.time(),
            duration_ms=(time.perf_counter() - started) * 1000,
            success=success,
            error=_error_message(error) if error is not None else None,
            retry_count=retry_count,
            slow_threshold_ms=self.slow_threshold_ms,
        )
        self.record(metric)
        return metric

    async def monitored_query(
        self, name: str, operation: Callable[[], Awaitable[T]]
    ) -> T:
        """Run ``operation`` once, recording a metric. Errors propagate."""
        start_time = time.time()
        started = time.perf_counter()
        try:
            result = await operation()
        except Exception as e:
            self._finish(name, start_time, started, success=False, error=e)
            raise

        self._finish(name, start_time, started, success=True)
        return result

    async def monitored_query_with_retry(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> T:
        """Run ``operation`` with up to ``max_retries`` attempts.

        Retryable failures wait ``base_delay_ms * attempt`` before the next
        attempt. Non-retryable failures propagate unchanged after a single
        attempt.

        Args:
            name: Query name recorded in metrics and logs
            operation: Zero-argument coroutine function running the query
            max_retries: Total attempts allowed, including the first;
                defaults to the monitor's max_retries
            base_delay_ms: Backoff unit in milliseconds; defaults to the
                monitor's base_delay_ms
            timeout: Optional deadline in seconds covering every attempt and
                backoff wait

        Raises:
            Exception: The last error, re-raised once every attempt failed
                with a retryable error. A note naming the query and the
                retry count is attached with ``add_note``.
            asyncio.TimeoutError: ``timeout`` elapsed first.
        """
        if max_retries is None:
            max_retries = self.max_retries
        if base_delay_ms is None:
            base_delay_ms = self.base_delay_ms
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        start_time = time.time()
        started = time.perf_counter()
        attempts = 0
        finished = False

        def finish(**kwargs: Any) -> None:
            nonlocal finished
            finished = True
            self._finish(name, start_time, started, **kwargs)

        async def run_attempts() -> T:
            nonlocal attempts
            last_error: Optional[Exception] = None

            for attempt in range(1, max_retries + 1):
                attempts = attempt
                try:
                    result = await operation()
                except Exception as e:
                    last_error = e
                    if not is_retryable_error(e):
                        finish(success=False, error=e, retry_count=attempt - 1)
                        raise
                    if attempt == max_retries:
                        break

                    delay_ms = base_delay_ms * attempt
                    logger.warning(
                        f"Retry {attempt}/{max_retries} for {name} after "
                        f"{type(e).__name__}: {e}. Waiting {delay_ms:.0f}ms...",
                        extra=get_log_context(query_name=name, retry_count=attempt),
                    )
                    await self._sleep(delay_ms / 1000)
                    continue

                finish(success=True, retry_count=attempt - 1)
                return result

            finish(success=False, error=last_error, retry_count=max_retries - 1)
            last_error.add_note(
                f"{name}: failed after {max_retries} attempts "
                f"({max_retries - 1} retries)"
            )
            raise last_error

        if timeout is None:
            return await run_attempts()

        try:
            return await asyncio.wait_for(run_attempts(), timeout=timeout)
        except asyncio.TimeoutError:
            if not finished:
                finish(
                    success=False,
                    error=TimeoutError(f"Query timed out after {timeout}s"),
                    retry_count=max(0, attempts - 1),
                )
            raise

    def get_query_metrics(self) -> list[QueryMetric]:
        """Copy of the buffered metrics, oldest first."""
        return list(self._metrics)

    def get_query_statistics(self) -> QueryStatistics:
        metrics = list(self._metrics)
        total = len(metrics)
        if total == 0:
            return QueryStatistics()

        durations = [m.duration_ms for m in metrics]
        failed = sum(1 for m in metrics if not m.success)
        return QueryStatistics(
            total=total,
            successful=total - failed,
            failed=failed,
            failure_rate=(failed / total) * 100,
            avg_duration_ms=sum(durations) / total,
            min_duration_ms=min(durations),
            max_duration_ms=max(durations),
            slow_queries=sum(1 for m in metrics if m.slow),
            queries_with_retries=sum(1 for m in metrics if m.retry_count > 0),
        )

    async def check_database_health(self, engine: Optional[AsyncEngine]) -> DatabaseHealth:
        """Run ``SELECT 1`` and time it. Never raises."""
        timestamp = datetime.now(timezone.utc).isoformat()
        if engine is None:
            return DatabaseHealth(
                connected=False,
                response_time_ms=0.0,
                error="Database not configured",
                timestamp=timestamp,
            )

        started = time.perf_counter()
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1 AS health_check"))
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return DatabaseHealth(
                connected=False,
                response_time_ms=round((time.perf_counter() - started) * 1000, 2),
                error=_error_message(e),
                timestamp=timestamp,
            )

        return DatabaseHealth(
            connected=True,
            response_time_ms=round((time.perf_counter() - started) * 1000, 2),
            error=None,
            timestamp=timestamp,
        )

    async def get_database_diagnostics(self, engine: Optional[AsyncEngine]) -> dict:
        """Health, statistics, recent failures and slow queries, server stats."""
        metrics = list(self._metrics)
        failures = [m for m in metrics if not m.success][-DIAGNOSTICS_RECENT_LIMIT:]
        slow = [m for m in metrics if m.slow][-DIAGNOSTICS_RECENT_LIMIT:]

        diagnostics: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "health": (await self.check_database_health(engine)).to_dict(),
            "query_stats": self.get_query_statistics().to_dict(),
            "recent_failures": [
                {
                    "query": m.name,
                    "duration_ms": round(m.duration_ms, 2),
                    "error": m.error,
                    "retries": m.retry_count,
                    "timestamp": _utc_iso(m.start_time),
                }
                for m in failures
            ],
            "slow_queries": [
                {
                    "query": m.name,
                    "duration_ms": round(m.duration_ms, 2),
                    "retries": m.retry_count,
                    "timestamp": _utc_iso(m.start_time),
                }
                for m in slow
            ],
        }

        if engine is None:
            diagnostics["postgres_stats_error"] = "Database not configured"
            return diagnostics

        try:
            async with engine.connect() as conn:
                result = await conn.execute(POSTGRES_STATS_QUERY)
                row = result.mappings().first()
            diagnostics["postgres_stats"] = dict(row) if row is not None else None
        except Exception as e:
            diagnostics["postgres_stats_error"] = _error_message(e)

        return diagnostics

    def clear_metrics(self) -> None:
        self._metrics.clear()
