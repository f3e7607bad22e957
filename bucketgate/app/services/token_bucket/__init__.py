"""Distributed token bucket rate limiting backed by Redis.

This package provides atomic bucket spends using a Redis Lua script, with an
in-memory store for single-instance deployments.
"""

from .algorithm import SpendOutcome, refill, spend
from .context import (
    RateLimiterContext,
    get_rate_limiter,
    get_rate_limiter_context,
    init_rate_limiter,
    install_rate_limiter,
)
from .engine import TokenBucketEngine
from .models import (
    BucketConfig,
    BucketState,
    ConsumeResult,
    Decision,
    RefillMode,
    per_second_config,
)
from .redis_lua import TOKEN_BUCKET_SCRIPT
from .stores import BucketStore, InMemoryBucketStore, RedisBucketStore

__all__ = [
    # Models
    "BucketConfig",
    "BucketState",
    "ConsumeResult",
    "Decision",
    "RefillMode",
    "per_second_config",
    # Algorithm
    "SpendOutcome",
    "refill",
    "spend",
    "TOKEN_BUCKET_SCRIPT",
    # Stores
    "BucketStore",
    "InMemoryBucketStore",
    "RedisBucketStore",
    # Engine and lifecycle
    "TokenBucketEngine",
    "RateLimiterContext",
    "get_rate_limiter",
    "get_rate_limiter_context",
    "init_rate_limiter",
    "install_rate_limiter",
]
