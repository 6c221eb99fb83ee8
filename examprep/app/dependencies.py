"""Service container and FastAPI dependencies.

Services are built once per application by ``build_services`` and stored on
``app.state.services``. Route handlers obtain them through the ``get_*``
dependencies below, so tests can swap in their own container.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from examprep.app.core.cache import CacheBackend, InMemoryCache, create_cache_backend
from examprep.app.core.config import Settings
from examprep.app.core.logging import get_logger
from examprep.app.db.async_session import close_async_engine, get_async_engine
from examprep.app.middleware.rate_limit.models import FailurePolicy
from examprep.app.services.cache_invalidation import CacheInvalidation
from examprep.app.services.cache_store import CacheStore
from examprep.app.services.query_monitor import QueryMonitor

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything the resilience layer shares across requests."""
    settings: Settings
    cache: CacheStore
    invalidation: CacheInvalidation
    query_monitor: QueryMonitor
    rate_limit_backend: CacheBackend
    failure_policy: FailurePolicy
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        """Drain pending cache writes and release connections."""
        await self.cache.close()
        # Rate limiting shares the Redis backend with the cache when configured
        if self.rate_limit_backend is not self.cache.backend:
            await self.rate_limit_backend.close()
        await close_async_engine(self.engine)


def build_services(
    settings: Settings,
    backend: Optional[CacheBackend] = None,
    engine: Optional[AsyncEngine] = None,
) -> ServiceContainer:
    """Wire the services from settings.

    Args:
        settings: Application settings
        backend: Store backend override; defaults to Redis when configured
        engine: Database engine override; defaults to one built from settings
    """
    if backend is None:
        backend = create_cache_backend(settings)
    if engine is None:
        engine = get_async_engine(settings)

    cache = CacheStore(
        backend,
        default_ttl=settings.cache_default_ttl,
        write_queue_size=settings.cache_write_queue_size,
        scan_count=settings.cache_scan_count,
    )

    if backend is not None:
        rate_limit_backend = backend
    else:
        logger.warning(
            "Rate limiting is using a process-local store; limits are not "
            "shared across instances."
        )
        rate_limit_backend = InMemoryCache()

    failure_policy = FailurePolicy.for_environment(
        settings.environment, settings.rate_limit_failure_policy
    )
    logger.info(f"Rate limiter failure policy: {failure_policy.value}")

    return ServiceContainer(
        settings=settings,
        cache=cache,
        invalidation=CacheInvalidation(cache),
        query_monitor=QueryMonitor(
            capacity=settings.query_metrics_capacity,
            slow_threshold_ms=settings.query_slow_threshold_ms,
            max_retries=settings.query_max_retries,
            base_delay_ms=settings.query_retry_base_delay_ms,
        ),
        rate_limit_backend=rate_limit_backend,
        failure_policy=failure_policy,
        engine=engine,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_cache_store(request: Request) -> CacheStore:
    return get_services(request).cache


def get_cache_invalidation(request: Request) -> CacheInvalidation:
    return get_services(request).invalidation


def get_query_monitor(request: Request) -> QueryMonitor:
    return get_services(request).query_monitor
