"""Core utilities for bucketgate."""

from bucketgate.app.core.config import settings
from bucketgate.app.core.logging import get_logger, setup_logging
from bucketgate.app.core.store import LinearBackoff, StoreConnection

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "LinearBackoff",
    "StoreConnection",
]
