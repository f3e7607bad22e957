"""Services package for bucketgate.

This package provides the distributed token bucket engine and its stores.
"""

from bucketgate.app.services.token_bucket import (
    BucketConfig,
    ConsumeResult,
    Decision,
    RefillMode,
    TokenBucketEngine,
    get_rate_limiter,
    init_rate_limiter,
)

__all__ = [
    "BucketConfig",
    "ConsumeResult",
    "Decision",
    "RefillMode",
    "TokenBucketEngine",
    "get_rate_limiter",
    "init_rate_limiter",
]
