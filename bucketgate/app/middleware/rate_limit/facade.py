"""HTTP facade over the token bucket engine.

Typical usage in a route:

    @app.post("/listings")
    async def create_listing(request: Request):
        await enforce(request, RateLimitOptions(name="listings:create", limit=10, window_sec=60))
        ...

or as a dependency that also writes the headers on success:

    @app.post("/messages", dependencies=[Depends(rate_limited(RateLimitOptions.default("messages:send")))])
"""

from typing import List, Optional, Sequence, Tuple, Union

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from bucketgate.app.api.metrics import record_rate_limit_decision
from bucketgate.app.core.config import settings
from bucketgate.app.core.logging import get_log_context, get_logger
from bucketgate.app.exceptions import RateLimitExceeded
from bucketgate.app.services.token_bucket import (
    BucketConfig,
    ConsumeResult,
    Decision,
    RefillMode,
    TokenBucketEngine,
    get_rate_limiter,
)

from .identity import compose, derive_identity, ip_identity, sanitize_name, user_identity
from .models import RateLimitOptions, RateLimitResult, Scope

logger = get_logger(__name__)

DIRECT_NAMESPACE = "rl:direct"
REQUEST_STATE_ATTR = "rate_limit"

OptionsArg = Union[RateLimitOptions, Sequence[RateLimitOptions]]


def _resolve_engine(request: Optional[Request], engine: Optional[TokenBucketEngine]) -> TokenBucketEngine:
    if engine is not None:
        return engine
    if request is not None:
        app_engine = getattr(request.app.state, "rate_limiter", None)
        if app_engine is not None:
            return app_engine
    return get_rate_limiter()


def _namespace(options: RateLimitOptions) -> str:
    namespace = f"rl:{sanitize_name(options.name)}"
    if options.scope is Scope.USER:
        namespace += ":user"
    elif options.scope is Scope.IP:
        namespace += ":ip"
    return namespace


def _identity(request: Request, options: RateLimitOptions) -> str:
    if options.key:
        return derive_identity(request, options.key)
    if options.scope is Scope.IP:
        return ip_identity(request)
    if options.scope is Scope.USER:
        # Anonymous callers of a per-user rule share their IP's bucket
        return user_identity(request) or ip_identity(request)
    return derive_identity(request)


def bucket_config(request: Request, options: RateLimitOptions) -> BucketConfig:
    """Translate request-level options into a bucket configuration."""
    window_ms = options.window_sec * 1000
    if options.mode is RefillMode.CONTINUOUS:
        return BucketConfig.continuous(
            key=_identity(request, options),
            capacity=options.limit,
            refill_amount=options.limit,
            refill_interval_ms=window_ms,
            namespace=_namespace(options),
        )
    return BucketConfig.fixed_window(
        key=_identity(request, options),
        limit=options.limit,
        window_ms=window_ms,
        namespace=_namespace(options),
    )


def _outcome(check: ConsumeResult, shadow: bool) -> str:
    if check.decision is Decision.STORE_UNAVAILABLE:
        return "degraded"
    if check.decision is Decision.BYPASSED:
        return "bypassed"
    if check.allowed:
        return "allowed"
    if shadow:
        return "shadowed"
    if check.decision is Decision.UNSATISFIABLE:
        return "unsatisfiable"
    return "denied"


def _binding_index(checks: List[ConsumeResult], candidates: List[int]) -> int:
    """Pick the check that explains the outcome.

    Among denied checks, the one that takes longest to clear; otherwise the
    one closest to running out.
    """
    denied = [i for i in candidates if not checks[i].allowed]
    if denied:
        return max(denied, key=lambda i: checks[i].retry_after_ms)
    return min(candidates, key=lambda i: checks[i].remaining)


def _build_result(
    options: Sequence[RateLimitOptions],
    checks: List[ConsumeResult],
    shadows: List[bool],
) -> RateLimitResult:
    blocking = [i for i, c in enumerate(checks) if not c.allowed and not shadows[i]]
    allowed = not blocking
    index = _binding_index(checks, blocking or list(range(len(checks))))
    binding = checks[index]
    opts = options[index]
    return RateLimitResult(
        limiter=opts.name,
        allowed=allowed,
        decision=binding.decision,
        remaining=binding.remaining,
        limit=binding.limit,
        reset_seconds=binding.reset_seconds,
        retry_after_seconds=binding.retry_after_seconds,
        window_sec=opts.window_sec,
        bucket_key=binding.storage_key,
        shadow_mode=shadows[index],
        checks=tuple(checks),
    )


async def evaluate(
    request: Request,
    options: OptionsArg,
    *,
    engine: Optional[TokenBucketEngine] = None,
) -> RateLimitResult:
    """Evaluate one or more limiters for a request without raising on denial.

    Every limiter is consumed concurrently. The returned result describes the
    binding check and keeps all raw results in ``checks``. The result is also
    stored on ``request.state`` for ``RateLimitHeadersMiddleware``.

    Raises:
        ConfigError: For malformed limiter options
    """
    opts: List[RateLimitOptions] = (
        [options] if isinstance(options, RateLimitOptions) else list(options)
    )
    if not opts:
        raise ValueError("evaluate() needs at least one RateLimitOptions")
    return await evaluate_buckets(
        request, [(o, bucket_config(request, o)) for o in opts], engine=engine
    )


async def evaluate_buckets(
    request: Request,
    limits: Sequence[Tuple[RateLimitOptions, BucketConfig]],
    *,
    engine: Optional[TokenBucketEngine] = None,
) -> RateLimitResult:
    """Like ``evaluate`` but with caller-built bucket configurations.

    ``RateLimitOptions`` still supplies the limiter name, window, cost and
    shadow flag of each bucket.
    """
    if not limits:
        raise ValueError("evaluate_buckets() needs at least one limit")
    opts = [o for o, _ in limits]

    limiter = _resolve_engine(request, engine)
    plan: List[Tuple[BucketConfig, int]] = [(config, o.cost) for o, config in limits]
    _, checks = await compose(limiter, plan)

    shadows = [o.shadow_mode or settings.rate_limit_shadow_mode for o in opts]
    for opt, check, shadow in zip(opts, checks, shadows):
        outcome = _outcome(check, shadow)
        if outcome == "shadowed":
            logger.info(
                f"Shadow mode: would have rate limited {check.storage_key}",
                extra=get_log_context(
                    limiter=opt.name, bucket=check.storage_key, decision=check.decision.value
                ),
            )
        await record_rate_limit_decision(opt.name, outcome)

    result = _build_result(opts, checks, shadows)
    setattr(request.state, REQUEST_STATE_ATTR, result)
    return result


async def enforce(
    request: Request,
    options: OptionsArg,
    *,
    engine: Optional[TokenBucketEngine] = None,
) -> RateLimitResult:
    """Evaluate and raise RateLimitExceeded when the request must be blocked.

    Raises:
        RateLimitExceeded: If any non-shadow limiter denied the request
    """
    result = await evaluate(request, options, engine=engine)
    if not result.allowed:
        raise RateLimitExceeded(result)
    return result


async def rate_limit(
    bucket_key: str,
    limit: int,
    window_sec: int,
    *,
    engine: Optional[TokenBucketEngine] = None,
) -> None:
    """Direct limiter for call sites without a request.

    Honours the global ``rate_limit_shadow_mode`` switch: a denial is then
    logged and counted but not raised.

    Raises:
        RateLimitExceeded: If the bucket is exhausted
    """
    limiter = _resolve_engine(None, engine)
    config = BucketConfig.fixed_window(
        key=bucket_key, limit=limit, window_ms=window_sec * 1000, namespace=DIRECT_NAMESPACE
    )
    check = await limiter.consume(config)
    shadow = settings.rate_limit_shadow_mode
    outcome = _outcome(check, shadow)
    await record_rate_limit_decision("direct", outcome)
    if outcome == "shadowed":
        logger.info(
            f"Shadow mode: would have rate limited {check.storage_key}",
            extra=get_log_context(
                limiter="direct", bucket=check.storage_key, decision=check.decision.value
            ),
        )
        return
    if not check.allowed:
        raise RateLimitExceeded(
            _build_result([RateLimitOptions(name="direct", limit=limit, window_sec=window_sec)], [check], [False])
        )


def apply_rate_limit_headers(response: Response, result: RateLimitResult) -> Response:
    """Set the X-RateLimit-* headers on an outgoing response."""
    for name, value in result.headers().items():
        response.headers[name] = value
    return response


def too_many_requests_response(result: RateLimitResult) -> JSONResponse:
    """429 JSON response with Retry-After and the X-RateLimit-* headers."""
    exc = RateLimitExceeded(result)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=exc.headers())


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.info(
        f"Rate limited {exc.result.bucket_key}",
        extra=get_log_context(
            limiter=exc.limiter,
            bucket=exc.result.bucket_key,
            decision=exc.result.decision.value,
            path=request.url.path,
            method=request.method,
        ),
    )
    return too_many_requests_response(exc.result)


def register_rate_limit_handlers(app: FastAPI) -> None:
    """Install the RateLimitExceeded -> 429 handler on ``app``."""
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


def rate_limited(*options: RateLimitOptions, engine: Optional[TokenBucketEngine] = None):
    """FastAPI dependency enforcing ``options`` and annotating the response.

    Example:
        @app.post("/upload/presign")
        async def presign(limit: RateLimitResult = Depends(rate_limited(
            RateLimitOptions(name="upload:presign", limit=30, window_sec=60)
        ))):
            ...
    """
    if not options:
        raise ValueError("rate_limited() needs at least one RateLimitOptions")

    async def dependency(request: Request, response: Response) -> RateLimitResult:
        result = await enforce(request, list(options), engine=engine)
        apply_rate_limit_headers(response, result)
        return result

    return dependency


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    """Copy the request's rate limit result onto the final response.

    Headers already set by the route (or the 429 handler) are left alone.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)

        result = getattr(request.state, REQUEST_STATE_ATTR, None)
        if isinstance(result, RateLimitResult):
            for name, value in result.headers().items():
                if name not in response.headers:
                    response.headers[name] = value

        return response
