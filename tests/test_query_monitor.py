"""Tests for query monitoring and retry with backoff."""

import asyncio
import errno
import socket
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import create_async_engine

from examprep.app.exceptions import ConnectivityError
from examprep.app.services.query_monitor import (
    QueryMetric,
    QueryMonitor,
    is_retryable_error,
)


class CodedError(Exception):
    """Driver error carrying a Node-style string code."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


def make_monitor(**kwargs) -> QueryMonitor:
    return QueryMonitor(sleep=AsyncMock(), **kwargs)


class TestIsRetryableError:
    """Tests for retryable error classification."""

    @pytest.mark.parametrize(
        "error",
        [
            ConnectivityError(),
            ConnectionRefusedError(),
            TimeoutError(),
            asyncio.TimeoutError(),
            socket.gaierror("Name or service not known"),
            OSError(errno.ETIMEDOUT, "timed out"),
            CodedError("connect failed", "ECONNREFUSED"),
            CodedError("lookup failed", "ENOTFOUND"),
            Exception("CONNECT_TIMEOUT db.internal:5432"),
            Exception("Connection terminated unexpectedly"),
            Exception("Connection closed by server"),
        ],
    )
    def test_retryable(self, error):
        assert is_retryable_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            ValueError("bad input"),
            KeyError("missing"),
            CodedError("duplicate key", "23505"),
            ProgrammingError("SELECT nope", {}, Exception("syntax error")),
        ],
    )
    def test_not_retryable(self, error):
        assert is_retryable_error(error) is False

    def test_invalidated_connection_is_retryable(self):
        error = OperationalError(
            "SELECT 1", {}, Exception("server closed"), connection_invalidated=True
        )
        assert is_retryable_error(error) is True


class TestMonitoredQuery:
    """Tests for single-attempt monitoring."""

    @pytest.mark.asyncio
    async def test_success_records_metric(self):
        monitor = make_monitor()
        result = await monitor.monitored_query("list_decks", AsyncMock(return_value=[1, 2]))

        assert result == [1, 2]
        [metric] = monitor.get_query_metrics()
        assert metric.name == "list_decks"
        assert metric.success is True
        assert metric.retry_count == 0
        assert metric.error is None

    @pytest.mark.asyncio
    async def test_failure_records_and_reraises(self):
        monitor = make_monitor()
        with pytest.raises(ValueError):
            await monitor.monitored_query("bad", AsyncMock(side_effect=ValueError("nope")))

        [metric] = monitor.get_query_metrics()
        assert metric.success is False
        assert metric.error == "nope"


class TestMonitoredQueryWithRetry:
    """Tests for retry with linear backoff."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        monitor = make_monitor()
        operation = AsyncMock(side_effect=[ConnectionRefusedError(), "rows"])

        result = await monitor.monitored_query_with_retry("q", operation)

        assert result == "rows"
        assert operation.await_count == 2
        [metric] = monitor.get_query_metrics()
        assert metric.success is True
        assert metric.retry_count == 1

    @pytest.mark.asyncio
    async def test_backoff_is_linear(self):
        monitor = make_monitor()
        operation = AsyncMock(side_effect=ConnectionRefusedError())

        with pytest.raises(ConnectionRefusedError):
            await monitor.monitored_query_with_retry(
                "q", operation, max_retries=4, base_delay_ms=250
            )

        delays = [call.args[0] for call in monitor._sleep.await_args_list]
        assert delays == [0.25, 0.5, 0.75]

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self):
        """Always-retryable failures run exactly max_retries attempts."""
        monitor = make_monitor()
        last = ConnectionRefusedError("refused #3")
        operation = AsyncMock(
            side_effect=[ConnectionRefusedError("refused #1"), ConnectionRefusedError("refused #2"), last]
        )

        with pytest.raises(ConnectionRefusedError) as exc_info:
            await monitor.monitored_query_with_retry("q", operation, max_retries=3)

        assert operation.await_count == 3
        assert exc_info.value is last
        assert exc_info.value.__notes__ == ["q: failed after 3 attempts (2 retries)"]
        [metric] = monitor.get_query_metrics()
        assert metric.success is False
        assert metric.retry_count == 2
        assert metric.error == "refused #3"

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_after_one_attempt(self):
        monitor = make_monitor()
        error = ValueError("constraint violated")
        operation = AsyncMock(side_effect=error)

        with pytest.raises(ValueError) as exc_info:
            await monitor.monitored_query_with_retry("q", operation)

        assert exc_info.value is error
        assert operation.await_count == 1
        monitor._sleep.assert_not_awaited()
        assert monitor.get_query_metrics()[0].retry_count == 0

    @pytest.mark.asyncio
    async def test_invalid_max_retries(self):
        with pytest.raises(ValueError):
            await make_monitor().monitored_query_with_retry("q", AsyncMock(), max_retries=0)

    def test_invalid_default_max_retries(self):
        with pytest.raises(ValueError):
            make_monitor(max_retries=0)

    @pytest.mark.asyncio
    async def test_uses_monitor_defaults(self):
        monitor = make_monitor(max_retries=2, base_delay_ms=40)
        operation = AsyncMock(side_effect=ConnectionRefusedError())

        with pytest.raises(ConnectionRefusedError):
            await monitor.monitored_query_with_retry("q", operation)

        assert operation.await_count == 2
        monitor._sleep.assert_awaited_once_with(0.04)

    @pytest.mark.asyncio
    async def test_call_arguments_override_defaults(self):
        monitor = make_monitor(max_retries=5, base_delay_ms=40)
        operation = AsyncMock(side_effect=ConnectionRefusedError())

        with pytest.raises(ConnectionRefusedError):
            await monitor.monitored_query_with_retry(
                "q", operation, max_retries=1, base_delay_ms=0
            )

        assert operation.await_count == 1
        monitor._sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_bounds_whole_call(self):
        """The deadline covers backoff waits, not just a single attempt."""
        monitor = QueryMonitor()
        operation = AsyncMock(side_effect=ConnectionRefusedError())

        with pytest.raises(asyncio.TimeoutError):
            await monitor.monitored_query_with_retry(
                "q", operation, max_retries=3, base_delay_ms=10_000, timeout=0.05
            )

        assert operation.await_count == 1
        [metric] = monitor.get_query_metrics()
        assert metric.success is False
        assert "timed out" in metric.error

    @pytest.mark.asyncio
    async def test_timeout_not_hit(self):
        monitor = make_monitor()
        result = await monitor.monitored_query_with_retry(
            "q", AsyncMock(return_value=1), timeout=5
        )
        assert result == 1
        assert len(monitor.get_query_metrics()) == 1


class TestMetricsBuffer:
    """Tests for the ring buffer and statistics."""

    def _metric(self, name="q", duration_ms=10.0, success=True, retry_count=0):
        return QueryMetric(
            name=name,
            start_time=0.0,
            end_time=0.0,
            duration_ms=duration_ms,
            success=success,
            retry_count=retry_count,
        )

    def test_capacity_drops_oldest(self):
        monitor = make_monitor(capacity=100)
        for i in range(101):
            monitor.record(self._metric(name=f"q{i}"))

        metrics = monitor.get_query_metrics()
        assert len(metrics) == 100
        assert metrics[0].name == "q1"
        assert metrics[-1].name == "q100"

    def test_slow_flag(self):
        assert self._metric(duration_ms=5000.0).slow is False
        assert self._metric(duration_ms=5000.1).slow is True

    def test_statistics(self):
        monitor = make_monitor()
        monitor.record(self._metric(duration_ms=100.0))
        monitor.record(self._metric(duration_ms=6000.0, retry_count=2))
        monitor.record(self._metric(duration_ms=200.0, success=False))
        monitor.record(self._metric(duration_ms=300.0, success=False, retry_count=1))

        stats = monitor.get_query_statistics()

        assert stats.total == 4
        assert stats.successful == 2
        assert stats.failed == 2
        assert stats.failure_rate == 50.0
        assert stats.avg_duration_ms == 1650.0
        assert stats.min_duration_ms == 100.0
        assert stats.max_duration_ms == 6000.0
        assert stats.slow_queries == 1
        assert stats.queries_with_retries == 2
        assert stats.to_dict()["failure_rate_formatted"] == "50.00%"

    def test_statistics_empty(self):
        stats = make_monitor().get_query_statistics()
        assert stats.total == 0
        assert stats.failure_rate == 0.0

    def test_clear_metrics(self):
        monitor = make_monitor()
        monitor.record(self._metric())
        monitor.clear_metrics()
        assert monitor.get_query_metrics() == []

    def test_get_query_metrics_returns_copy(self):
        monitor = make_monitor()
        monitor.record(self._metric())
        monitor.get_query_metrics().clear()
        assert len(monitor.get_query_metrics()) == 1

    def test_metric_to_dict(self):
        data = self._metric(duration_ms=6000.0).to_dict()
        assert data["slow"] is True
        assert "slow_threshold_ms" not in data


class TestDatabaseHealth:
    """Tests for the SELECT 1 health check and diagnostics."""

    @pytest.mark.asyncio
    async def test_connected(self):
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        try:
            health = await make_monitor().check_database_health(engine)
        finally:
            await engine.dispose()

        assert health.connected is True
        assert health.error is None
        assert health.response_time_ms >= 0

    @pytest.mark.asyncio
    async def test_unreachable(self):
        engine = MagicMock()
        engine.connect.side_effect = ConnectionRefusedError("Connection refused")

        health = await make_monitor().check_database_health(engine)

        assert health.connected is False
        assert health.error == "Connection refused"

    @pytest.mark.asyncio
    async def test_not_configured(self):
        health = await make_monitor().check_database_health(None)
        assert health.connected is False
        assert health.error == "Database not configured"

    @pytest.mark.asyncio
    async def test_diagnostics(self):
        monitor = make_monitor()
        for i in range(12):
            monitor.record(
                QueryMetric(
                    name=f"fail{i}", start_time=0.0, end_time=0.0,
                    duration_ms=6000.0, success=False, error="boom",
                )
            )
        engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        try:
            diagnostics = await monitor.get_database_diagnostics(engine)
        finally:
            await engine.dispose()

        assert diagnostics["health"]["connected"] is True
        assert diagnostics["query_stats"]["total"] == 12
        assert len(diagnostics["recent_failures"]) == 10
        assert diagnostics["recent_failures"][-1]["query"] == "fail11"
        assert len(diagnostics["slow_queries"]) == 10
        # pg_stat_activity does not exist on SQLite
        assert "postgres_stats_error" in diagnostics
