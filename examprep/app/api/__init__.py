"""API routers for the examprep application."""

from examprep.app.api.metrics import router as metrics_router

__all__ = ["metrics_router"]
