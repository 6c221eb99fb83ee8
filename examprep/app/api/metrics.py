"""Cache and database monitoring endpoints.

Exposes the cache store metrics and health check, the background write
queue counters, and the query monitor statistics and diagnostics.
"""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Response

from examprep.app.core.logging import get_logger
from examprep.app.dependencies import (
    ServiceContainer,
    get_cache_store,
    get_query_monitor,
    get_services,
)
from examprep.app.services.cache_store import CacheStore
from examprep.app.services.query_monitor import QueryMonitor

logger = get_logger(__name__)
router = APIRouter(prefix="/metrics", tags=["metrics"])

NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/cache")
async def get_cache_metrics(
    response: Response, cache: CacheStore = Depends(get_cache_store)
) -> dict[str, Any]:
    """Hit/miss counts and rate, connection status and a live health check."""
    response.headers.update(NO_CACHE_HEADERS)
    health = await cache.check_health()
    return {
        "enabled": cache.is_enabled,
        "metrics": cache.get_metrics().to_dict(),
        "health": health.to_dict(),
        "writes": cache.writes.get_stats().to_dict(),
        "timestamp": _now(),
    }


@router.post("/cache/reset")
async def reset_cache_metrics(
    cache: CacheStore = Depends(get_cache_store),
) -> dict[str, Any]:
    cache.reset_metrics()
    logger.info("Cache metrics reset")
    return {"message": "Cache metrics reset successfully", "timestamp": _now()}


@router.get("/queries")
async def get_query_metrics(
    response: Response,
    monitor: QueryMonitor = Depends(get_query_monitor),
) -> dict[str, Any]:
    """Aggregate query statistics plus the buffered metrics, newest last."""
    response.headers.update(NO_CACHE_HEADERS)
    return {
        "statistics": monitor.get_query_statistics().to_dict(),
        "queries": [m.to_dict() for m in monitor.get_query_metrics()],
        "timestamp": _now(),
    }


@router.get("/database")
async def get_database_diagnostics(
    response: Response,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    response.headers.update(NO_CACHE_HEADERS)
    return await services.query_monitor.get_database_diagnostics(services.engine)
