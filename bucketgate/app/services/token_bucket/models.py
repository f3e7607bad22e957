"""Data models for the token bucket engine."""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bucketgate.app.exceptions import ConfigError

DEFAULT_NAMESPACE = "rl:tb"
MIN_TTL_MS = 60_000


class RefillMode(str, Enum):
    """How a bucket regains tokens."""

    FIXED_WINDOW = "fixed_window"  # Reset to full capacity at each window boundary
    CONTINUOUS = "continuous"  # Regenerate proportionally to elapsed time


class Decision(str, Enum):
    """Outcome class of one spend attempt."""

    ALLOWED = "allowed"
    DENIED = "denied"
    UNSATISFIABLE = "unsatisfiable"  # cost can never fit in the bucket
    STORE_UNAVAILABLE = "store_unavailable"
    BYPASSED = "bypassed"  # rate limiting globally disabled


@dataclass(frozen=True)
class BucketConfig:
    """Identity and shape of a rate limit.

    Attributes:
        key: Caller identity (e.g. ``u:<user id>`` or ``ip:<address>``)
        namespace: Logical limiter grouping (e.g. ``rl:admin:reports:list``)
        capacity: Maximum tokens the bucket holds
        refill_amount: Tokens restored per refill interval
        refill_interval_ms: Duration of one refill cycle
        mode: Refill model; fixed window requires ``refill_amount == capacity``
        ttl_seconds: Override for the idle expiry of the stored bucket
    """

    key: str
    capacity: int
    refill_amount: int
    refill_interval_ms: int
    namespace: str = DEFAULT_NAMESPACE
    mode: RefillMode = RefillMode.FIXED_WINDOW
    ttl_seconds: Optional[int] = None

    @classmethod
    def fixed_window(
        cls, key: str, limit: int, window_ms: int, namespace: str = DEFAULT_NAMESPACE
    ) -> "BucketConfig":
        """Classic window: ``limit`` spends per ``window_ms``."""
        return cls(
            key=key,
            capacity=limit,
            refill_amount=limit,
            refill_interval_ms=window_ms,
            namespace=namespace,
            mode=RefillMode.FIXED_WINDOW,
        )

    @classmethod
    def continuous(
        cls,
        key: str,
        capacity: int,
        refill_amount: int,
        refill_interval_ms: int,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> "BucketConfig":
        """Smooth refill of ``refill_amount`` tokens per ``refill_interval_ms``."""
        return cls(
            key=key,
            capacity=capacity,
            refill_amount=refill_amount,
            refill_interval_ms=refill_interval_ms,
            namespace=namespace,
            mode=RefillMode.CONTINUOUS,
        )

    @property
    def storage_key(self) -> str:
        return f"{self.namespace}:{self.key}"

    @property
    def shape(self) -> tuple:
        return (self.capacity, self.refill_amount, self.refill_interval_ms, self.mode.value)

    @property
    def ttl_ms(self) -> int:
        """Idle expiry of the stored bucket.

        Fixed windows keep two intervals. Continuous buckets keep the time to
        refill from empty plus one interval, otherwise an early expiry would
        hand out a full bucket too soon.
        """
        if self.ttl_seconds is not None:
            return self.ttl_seconds * 1000
        if self.mode is RefillMode.FIXED_WINDOW:
            return max(MIN_TTL_MS, 2 * self.refill_interval_ms)
        to_full = math.ceil(self.capacity / self.refill_amount) * self.refill_interval_ms
        return max(MIN_TTL_MS, to_full + self.refill_interval_ms)

    def validate(self) -> None:
        """Raise ConfigError if the configuration is malformed."""
        if not self.key or not self.key.strip():
            raise ConfigError("BucketConfig.key must be a non-empty string")
        if not self.namespace or not self.namespace.strip():
            raise ConfigError("BucketConfig.namespace must be a non-empty string")
        for name in ("capacity", "refill_amount", "refill_interval_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"BucketConfig.{name} must be an integer >= 1, got {value!r}")
        if not isinstance(self.mode, RefillMode):
            raise ConfigError(f"Unknown refill mode: {self.mode!r}")
        if self.mode is RefillMode.FIXED_WINDOW and self.refill_amount != self.capacity:
            raise ConfigError(
                "fixed_window buckets restore the full capacity each window; "
                f"refill_amount ({self.refill_amount}) must equal capacity ({self.capacity}). "
                "Use RefillMode.CONTINUOUS for partial refills."
            )
        if self.ttl_seconds is not None and self.ttl_seconds < 1:
            raise ConfigError("BucketConfig.ttl_seconds must be >= 1 when set")


def per_second_config(
    key: str,
    per_second: int,
    burst: Optional[int] = None,
    namespace: str = DEFAULT_NAMESPACE,
) -> BucketConfig:
    """Build a continuous bucket of ``per_second`` tokens/s with a burst.

    Example: ``per_second_config("ip:1.2.3.4", per_second=5, burst=20)``
    """
    return BucketConfig.continuous(
        key=key,
        capacity=burst if burst is not None else per_second,
        refill_amount=per_second,
        refill_interval_ms=1000,
        namespace=namespace,
    )


@dataclass
class BucketState:
    """Persisted bucket state.

    Attributes:
        tokens: Tokens currently available (0 <= tokens <= capacity)
        window_start_ms: Start of the current window (fixed) or time of the
            last refill (continuous)
    """

    tokens: float
    window_start_ms: int


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of one spend attempt."""

    decision: Decision
    allowed: bool
    remaining: int
    reset_at_ms: int
    retry_after_ms: int
    storage_key: str
    limit: int
    observed_at_ms: int

    @property
    def reset_seconds(self) -> int:
        """Seconds until the next refill, relative to the store's clock."""
        return max(0, math.ceil((self.reset_at_ms - self.observed_at_ms) / 1000))

    @property
    def retry_after_seconds(self) -> int:
        return max(0, math.ceil(self.retry_after_ms / 1000))

    @property
    def denied(self) -> bool:
        return not self.allowed

    @property
    def degraded(self) -> bool:
        return self.decision is Decision.STORE_UNAVAILABLE
