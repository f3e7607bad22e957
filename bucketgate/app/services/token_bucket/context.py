"""Process-wide ownership of the rate limiter.

The engine and its store connection are created once per process during the
application lifespan and shut down with it:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with init_rate_limiter() as limiter:
            app.state.rate_limiter = limiter.engine
            yield
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from bucketgate.app.core.config import Settings, settings
from bucketgate.app.core.logging import get_logger
from bucketgate.app.core.store import StoreConnection

from .engine import TokenBucketEngine
from .stores import InMemoryBucketStore, RedisBucketStore

logger = get_logger(__name__)


class RateLimiterContext:
    """Owns the store connection and the engine built on top of it."""

    def __init__(
        self,
        engine: TokenBucketEngine,
        connection: Optional[StoreConnection] = None,
    ) -> None:
        self.engine = engine
        self.connection = connection

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "RateLimiterContext":
        """Build a Redis-backed context, or an in-memory one if Redis is disabled."""
        connection: Optional[StoreConnection] = None
        if config.redis_enabled:
            connection = StoreConnection.from_settings(config)
            store = RedisBucketStore(connection)
            logger.info(f"Using Redis rate limit store ({connection.public_url})")
        else:
            store = InMemoryBucketStore(max_entries=config.rate_limit_memory_max_entries)
            logger.info("Using in-memory rate limit store")

        engine = TokenBucketEngine(
            store,
            timeout_ms=config.rate_limit_store_timeout_ms,
            fail_closed=config.rate_limit_fail_closed,
            strict=config.debug,
            disabled=config.rate_limits_disabled,
            max_tracked_shapes=config.rate_limit_max_tracked_shapes,
        )
        return cls(engine, connection)

    async def startup(self) -> None:
        """Warm the store connection; an unreachable store is logged, not fatal."""
        if self.connection is None:
            return
        if not await self.connection.ping():
            logger.warning(
                "Rate limit store unreachable at startup; requests will be "
                "soft-allowed until it recovers"
            )

    async def shutdown(self) -> None:
        await self.engine.close()


_context: Optional[RateLimiterContext] = None


def get_rate_limiter_context() -> RateLimiterContext:
    """Get the active rate limiter context.

    Raises:
        RuntimeError: If the rate limiter has not been initialized.
    """
    if _context is None:
        raise RuntimeError(
            "Rate limiter not initialized. Ensure lifespan context is active."
        )
    return _context


def get_rate_limiter() -> TokenBucketEngine:
    return get_rate_limiter_context().engine


def install_rate_limiter(context: Optional[RateLimiterContext]) -> None:
    """Set (or clear, with None) the process-wide context."""
    global _context
    _context = context


@asynccontextmanager
async def init_rate_limiter(
    context: Optional[RateLimiterContext] = None,
) -> AsyncGenerator[RateLimiterContext, None]:
    """Start the rate limiter for the lifetime of the block."""
    ctx = context or RateLimiterContext.from_settings()
    await ctx.startup()
    install_rate_limiter(ctx)
    try:
        yield ctx
    finally:
        install_rate_limiter(None)
        await ctx.shutdown()
