"""Tests for the HTTP surface: health, metrics endpoints and error mapping."""

from unittest.mock import AsyncMock

from fastapi import Depends
from fastapi.testclient import TestClient

from conftest import make_settings
from examprep.app.dependencies import build_services, get_query_monitor
from examprep.app.exceptions import ConnectivityError
from examprep.app.main import create_app
from examprep.app.services.query_monitor import QueryMonitor


class TestHealth:
    """Tests for the /health endpoint."""

    def test_health_with_memory_backend(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["components"]["cache"]["status"] == "ok"
        assert data["components"]["database"] == {"status": "disabled"}

    def test_health_cache_disabled(self):
        settings = make_settings()
        app = create_app(settings=settings, services=build_services(settings))
        with TestClient(app) as client:
            data = client.get("/health").json()
        assert data["components"]["cache"] == {"status": "disabled"}

    def test_health_degraded_when_cache_down(self, settings):
        backend = AsyncMock()
        backend.set.side_effect = ConnectionError("Connection refused")
        app = create_app(settings=settings, services=build_services(settings, backend=backend))

        data = TestClient(app).get("/health").json()

        assert data["status"] == "degraded"
        assert data["components"]["cache"]["status"] == "error"
        assert data["components"]["cache"]["healthy"] is False


class TestRequestId:
    """Tests for request ID propagation."""

    def test_generated_when_missing(self, client):
        resp = client.get("/health")
        assert len(resp.headers["X-Request-ID"]) == 36

    def test_echoed_when_present(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"


class TestCacheMetricsEndpoints:
    """Tests for /metrics/cache and /metrics/cache/reset."""

    def test_cache_metrics(self, client, services):
        resp = client.get("/metrics/cache")
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        data = resp.json()
        assert data["enabled"] is True
        assert data["health"]["healthy"] is True
        assert "hit_rate_formatted" in data["metrics"]
        assert data["writes"]["dropped"] == 0

    def test_reset(self, client, services):
        client.portal.call(services.cache.get, "missing")
        assert client.get("/metrics/cache").json()["metrics"]["misses"] == 1

        resp = client.post("/metrics/cache/reset")

        assert resp.status_code == 200
        assert resp.json()["message"] == "Cache metrics reset successfully"
        assert client.get("/metrics/cache").json()["metrics"]["misses"] == 0


class TestQueryMetricsEndpoints:
    """Tests for /metrics/queries and /metrics/database."""

    def test_query_metrics(self, client, services):
        client.portal.call(
            services.query_monitor.monitored_query, "list_decks", AsyncMock(return_value=[])
        )

        data = client.get("/metrics/queries").json()

        assert data["statistics"]["total"] == 1
        assert data["queries"][0]["name"] == "list_decks"
        assert data["queries"][0]["success"] is True

    def test_database_diagnostics_without_database(self, client):
        data = client.get("/metrics/database").json()
        assert data["health"]["connected"] is False
        assert data["postgres_stats_error"] == "Database not configured"


class TestErrorMapping:
    """Tests for exception handlers."""

    def test_exhausted_connectivity_retries_map_to_503(self, app):
        @app.get("/decks")
        async def list_decks(monitor: QueryMonitor = Depends(get_query_monitor)):
            return await monitor.monitored_query_with_retry(
                "list_decks",
                AsyncMock(side_effect=ConnectivityError("Database unreachable")),
                max_retries=2,
                base_delay_ms=0,
            )

        resp = TestClient(app).get("/decks")

        assert resp.status_code == 503
        body = resp.json()
        assert body["error"] == "service_unavailable"
        assert body["message"] == "Database unreachable"

    def test_connectivity_error_maps_to_503(self, app):
        @app.get("/boom")
        async def boom():
            raise ConnectivityError("Redis unreachable")

        resp = TestClient(app).get("/boom")

        assert resp.status_code == 503
        assert resp.json()["message"] == "Redis unreachable"


class TestServiceWiring:
    """Tests for build_services."""

    def test_query_monitor_uses_retry_settings(self):
        settings = make_settings(query_max_retries=5, query_retry_base_delay_ms=250)
        monitor = build_services(settings).query_monitor
        assert monitor.max_retries == 5
        assert monitor.base_delay_ms == 250
