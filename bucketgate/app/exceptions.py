"""Custom exceptions for the rate limiter."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bucketgate.app.middleware.rate_limit.models import RateLimitResult


class BucketgateException(Exception):
    """Base class for rate limiter exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class RateLimitExceeded(BucketgateException):
    """Raised when a bucket is legitimately exhausted.

    Carries the evaluated result so the boundary can render the 429 body
    and the X-RateLimit-* headers.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result: RateLimitResult):
        self.result = result
        self.limiter = result.limiter
        super().__init__(
            f"Rate limit exceeded for {result.limiter}. "
            f"Retry in {result.retry_after_seconds}s."
        )

    @property
    def retry_after(self) -> int:
        return self.result.retry_after_seconds

    def to_response(self) -> dict:
        """Convert to the 429 JSON body."""
        return {
            "error": "rate_limited",
            "limiter": self.result.limiter,
            "remaining": self.result.remaining,
            "resetSeconds": self.result.reset_seconds,
        }

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* headers plus Retry-After."""
        headers = self.result.headers()
        headers["Retry-After"] = str(max(1, self.result.retry_after_seconds))
        return headers


class StoreUnavailableError(BucketgateException):
    """Raised when the shared store cannot be reached or timed out.

    Never surfaced to end users: the engine converts it into a
    soft-allowed result at the call site.
    """
    status_code = 503

    def __init__(self, detail: str = "Rate limit store unavailable"):
        self.detail = detail
        super().__init__(detail)


class ConfigError(BucketgateException, ValueError):
    """Raised for malformed bucket configuration.

    This is a programming error, not a traffic-shaping decision.
    """
    status_code = 500

    def __init__(self, detail: str = "Invalid rate limit configuration"):
        self.detail = detail
        super().__init__(detail)
