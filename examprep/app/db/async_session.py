"""Async database engine for SQLAlchemy 2.0+.

The resilience layer never owns the schema or its queries; it only needs an
engine for health checks and diagnostics.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from examprep.app.core.config import Settings
from examprep.app.core.logging import get_logger

logger = get_logger(__name__)


def get_async_engine(settings: Settings) -> Optional[AsyncEngine]:
    """Create the async engine from settings.

    Returns:
        AsyncEngine instance, or None when no database URL is configured
    """
    url = settings.database_url
    if not url:
        logger.warning("DATABASE_URL is not configured. Database health checks disabled.")
        return None

    if "sqlite" in url.lower():
        engine = create_async_engine(url, echo=False)
        logger.info("Created SQLite async engine")
        return engine

    # asyncpg-specific connection arguments
    engine = create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        connect_args={"command_timeout": settings.db_command_timeout},
    )
    logger.info("Created PostgreSQL async engine")
    return engine


async def close_async_engine(engine: Optional[AsyncEngine]) -> None:
    """Dispose the engine on application shutdown."""
    if engine is None:
        return
    try:
        await engine.dispose()
        logger.debug("Async engine disposed successfully")
    except RuntimeError:
        # Event loop mismatch, connections already closed
        logger.debug("Engine dispose encountered RuntimeError (event loop mismatch)")
