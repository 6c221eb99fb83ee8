from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from examprep.app.api.metrics import router as metrics_router
from examprep.app.core.config import Settings, get_settings
from examprep.app.core.logging import get_logger, setup_logging
from examprep.app.dependencies import ServiceContainer, build_services
from examprep.app.exceptions import ConnectivityError, RateLimitExceededError
from examprep.app.middleware.rate_limit import (
    RateLimitHeadersMiddleware,
    get_rate_limit_headers,
)
from examprep.app.middleware.request_id import RequestIdMiddleware


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment if omitted
        services: Prebuilt service container, mainly for tests

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()
    setup_logging(settings)
    logger = get_logger(__name__)

    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Check backends on startup, drain writes and close connections on shutdown."""
        health = await services.cache.check_health()
        if services.cache.is_enabled and not health.healthy:
            # Cache is best-effort, keep serving without it
            logger.warning(f"Cache unavailable at startup: {health.error}")

        yield

        await services.close()
        logger.info("Services closed")

    app = FastAPI(
        title="examprep",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(RateLimitHeadersMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.include_router(metrics_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Cache and database status. Degraded rather than failing."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        cache_health = await services.cache.check_health()
        if services.cache.is_enabled:
            health_status["components"]["cache"] = {
                "status": "ok" if cache_health.healthy else "error",
                **cache_health.to_dict(),
            }
            if not cache_health.healthy:
                health_status["status"] = "degraded"
        else:
            health_status["components"]["cache"] = {"status": "disabled"}

        db_health = await services.query_monitor.check_database_health(services.engine)
        if services.engine is not None:
            health_status["components"]["database"] = {
                "status": "ok" if db_health.connected else "error",
                **db_health.to_dict(),
            }
            if not db_health.connected:
                health_status["status"] = "degraded"
        else:
            health_status["components"]["database"] = {"status": "disabled"}

        return health_status

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "Too many requests",
                "message": exc.message,
                "retry_after": exc.retry_after,
            },
            headers=get_rate_limit_headers(exc.result),
        )

    @app.exception_handler(ConnectivityError)
    async def connectivity_handler(request: Request, exc: ConnectivityError) -> JSONResponse:
        """Handle ConnectivityError and return HTTP 503 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "service_unavailable", "message": exc.message},
        )

    return app
