"""API endpoints package for bucketgate."""

from bucketgate.app.api.metrics import router as metrics_router

__all__ = [
    "metrics_router",
]
