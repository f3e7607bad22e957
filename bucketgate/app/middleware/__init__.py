"""Middleware package for bucketgate."""

from bucketgate.app.middleware.rate_limit import (
    RateLimitHeadersMiddleware,
    RateLimitOptions,
    enforce,
    evaluate,
    rate_limited,
)

__all__ = [
    "RateLimitHeadersMiddleware",
    "RateLimitOptions",
    "enforce",
    "evaluate",
    "rate_limited",
]
