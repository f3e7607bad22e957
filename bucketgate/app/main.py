from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bucketgate.app.api.metrics import router as metrics_router
from bucketgate.app.core.config import settings
from bucketgate.app.core.logging import get_log_context, get_logger, setup_logging
from bucketgate.app.exceptions import ConfigError
from bucketgate.app.middleware.rate_limit import (
    RateLimitHeadersMiddleware,
    register_rate_limit_handlers,
)
from bucketgate.app.services.token_bucket import RateLimiterContext, RedisBucketStore, init_rate_limiter


def create_app(context: RateLimiterContext | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        context: Prebuilt rate limiter context (tests); built from settings if None

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Connects the rate limit store on startup and closes it on shutdown.
        """
        async with init_rate_limiter(context) as limiter:
            app.state.rate_limiter = limiter.engine
            logger.info("Rate limiter started")
            yield
            app.state.rate_limiter = None
        logger.info("Rate limiter stopped")

    app = FastAPI(
        title="bucketgate",
        description="Distributed token bucket rate limiting",
        debug=settings.debug,
        lifespan=lifespan
    )

    app.add_middleware(RateLimitHeadersMiddleware)

    app.include_router(metrics_router, prefix="")

    register_rate_limit_handlers(app)

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Health check with rate limit store reachability."""
        engine = getattr(request.app.state, "rate_limiter", None)
        store_ok = engine is not None and await engine.ping()
        store_type = "redis" if engine is not None and isinstance(engine.store, RedisBucketStore) else "memory"
        health_status: dict[str, Any] = {
            "status": "ok" if store_ok else "degraded",
            "components": {
                "store": {"status": "ok" if store_ok else "error", "type": store_type}
            },
        }
        # Degraded store still serves traffic (soft-allow), so stay 200
        return JSONResponse(status_code=200, content=health_status)

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
        logger.error(
            f"Rate limit configuration error: {exc.detail}",
            extra=get_log_context(path=request.url.path, method=request.method),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "config_error", "message": exc.detail if settings.debug else "Internal server error"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {exc}",
            exc_info=True,
            extra=get_log_context(path=request.url.path, method=request.method),
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )

    return app


app = create_app()
