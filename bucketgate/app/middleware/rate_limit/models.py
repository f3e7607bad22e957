"""Rate limiting request-level models.

This module contains the options a route passes to the facade and the
result it gets back.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from bucketgate.app.services.token_bucket.models import ConsumeResult, Decision, RefillMode


class Scope(str, Enum):
    """Which caller identity a limiter keys on."""

    IDENTITY = "identity"  # user id if authenticated, else client IP, else UA hash
    USER = "user"
    IP = "ip"


@dataclass(frozen=True)
class RateLimitOptions:
    """One limiter applied to a request.

    Attributes:
        name: Logical limiter name, e.g. ``listings:create``
        limit: Tokens per window
        window_sec: Window (refill period) in seconds
        key: Explicit identity override
        shadow_mode: Observe and annotate headers, never block
        scope: Identity the bucket is keyed on
        cost: Tokens spent per request
        mode: Fixed window (default) or continuous refill
    """

    name: str
    limit: int
    window_sec: int
    key: Optional[str] = None
    shadow_mode: bool = False
    scope: Scope = Scope.IDENTITY
    cost: int = 1
    mode: RefillMode = RefillMode.FIXED_WINDOW

    @classmethod
    def default(cls, name: str, key: Optional[str] = None) -> "RateLimitOptions":
        """Conservative default for user actions: 60 requests / 60s."""
        return cls(name=name, limit=60, window_sec=60, key=key)

    @classmethod
    def sensitive(cls, name: str, key: Optional[str] = None) -> "RateLimitOptions":
        """Stricter limit for login/verification style actions: 5 requests / 60s."""
        return cls(name=name, limit=5, window_sec=60, key=key)


@dataclass(frozen=True)
class RateLimitResult:
    """Evaluated rate limit for one request.

    ``allowed`` is what business logic should act on (shadow mode forces it
    to True); ``decision`` and the numbers describe the real bucket state of
    the binding check.
    """

    limiter: str
    allowed: bool
    decision: Decision
    remaining: int
    limit: int
    reset_seconds: int
    retry_after_seconds: int
    window_sec: int
    bucket_key: str
    shadow_mode: bool = False
    checks: Tuple[ConsumeResult, ...] = field(default_factory=tuple)

    @property
    def would_block(self) -> bool:
        """True when the real evaluation denied, even if shadow mode let it pass."""
        return self.decision in (Decision.DENIED, Decision.UNSATISFIABLE) or (
            self.decision is Decision.STORE_UNAVAILABLE and not self.allowed and not self.shadow_mode
        )

    @property
    def shadowed(self) -> bool:
        """Denied by a bucket but let through by shadow mode."""
        return self.allowed and self.decision in (Decision.DENIED, Decision.UNSATISFIABLE)

    @property
    def policy(self) -> str:
        return f"{self.limiter}; window={self.window_sec}s; limit={self.limit}"

    def headers(self) -> Dict[str, str]:
        """Standard X-RateLimit-* headers (GitHub-style semantics)."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
            "X-RateLimit-Policy": self.policy,
            "X-RateLimit-Bucket": self.bucket_key,
            "X-RateLimit-Shadow-Mode": "1" if self.shadow_mode else "0",
        }
