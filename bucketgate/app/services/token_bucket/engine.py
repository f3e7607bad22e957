"""Token bucket engine.

Validates bucket configurations, runs the atomic spend against a
``BucketStore`` and turns store outages into soft-allowed results so an
infrastructure failure never becomes a self-inflicted denial of service.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Optional

from redis.exceptions import RedisError

from bucketgate.app.core.logging import get_log_context, get_logger
from bucketgate.app.exceptions import ConfigError, StoreUnavailableError

from .algorithm import SpendOutcome
from .models import BucketConfig, ConsumeResult, Decision
from .stores import BucketStore

logger = get_logger(__name__)


class TokenBucketEngine:
    """Atomic token bucket spends against a shared store.

    Args:
        store: Where bucket state lives
        timeout_ms: Upper bound on a single store round trip (None = unbounded)
        fail_closed: Deny instead of soft-allow when the store is unavailable
        strict: Raise ConfigError for costs that can never fit (development)
        disabled: Global kill switch; every call is allowed without a round trip
        max_tracked_shapes: How many storage keys to remember for shape checks
    """

    DEFAULT_MAX_TRACKED_SHAPES = 10000

    def __init__(
        self,
        store: BucketStore,
        *,
        timeout_ms: Optional[int] = None,
        fail_closed: bool = False,
        strict: bool = False,
        disabled: bool = False,
        max_tracked_shapes: int = DEFAULT_MAX_TRACKED_SHAPES,
    ) -> None:
        self.store = store
        self._timeout = timeout_ms / 1000 if timeout_ms else None
        self._fail_closed = fail_closed
        self._strict = strict
        self._disabled = disabled
        self._max_tracked_shapes = max_tracked_shapes
        self._shapes: OrderedDict[str, tuple] = OrderedDict()

    def _check_shape(self, config: BucketConfig) -> None:
        """Reject two different shapes for the same storage key."""
        key = config.storage_key
        known = self._shapes.get(key)
        if known is not None and known != config.shape:
            raise ConfigError(
                f"Bucket {key!r} already used with shape {known}, got {config.shape}; "
                "give differently-shaped limits their own namespace"
            )
        self._shapes[key] = config.shape
        self._shapes.move_to_end(key)
        if len(self._shapes) > self._max_tracked_shapes:
            self._shapes.popitem(last=False)

    async def consume(
        self, config: BucketConfig, cost: int = 1, *, now_ms: Optional[int] = None
    ) -> ConsumeResult:
        """Attempt to spend ``cost`` tokens from the bucket.

        Returns:
            ConsumeResult tagged with the Decision that produced it

        Raises:
            ConfigError: For malformed configs or costs (never swallowed)
        """
        if isinstance(cost, bool) or not isinstance(cost, int) or cost < 1:
            raise ConfigError(f"cost must be an integer >= 1, got {cost!r}")
        return await self._run(config, cost, now_ms)

    async def peek(
        self, config: BucketConfig, *, now_ms: Optional[int] = None
    ) -> ConsumeResult:
        """Report the bucket state without consuming tokens.

        ``allowed`` tells whether a single-token spend would succeed now.
        """
        return await self._run(config, 0, now_ms)

    async def _run(self, config: BucketConfig, cost: int, now_ms: Optional[int]) -> ConsumeResult:
        config.validate()
        self._check_shape(config)

        if self._disabled:
            return self._synthetic(config, Decision.BYPASSED, allowed=True, now_ms=now_ms)

        if cost > config.capacity:
            message = (
                f"cost {cost} exceeds capacity {config.capacity} of {config.storage_key}; "
                "this spend can never succeed"
            )
            if self._strict:
                raise ConfigError(message)
            logger.error(
                message,
                extra=get_log_context(bucket=config.storage_key, decision=Decision.UNSATISFIABLE.value),
            )
            return self._synthetic(config, Decision.UNSATISFIABLE, allowed=False, now_ms=now_ms)

        try:
            outcome = await self._spend_with_timeout(config, cost, now_ms)
        except StoreUnavailableError as e:
            return self._degrade(config, str(e), now_ms)

        return self._to_result(config, outcome)

    async def _spend_with_timeout(
        self, config: BucketConfig, cost: int, now_ms: Optional[int]
    ) -> SpendOutcome:
        try:
            if self._timeout is None:
                return await self.store.spend(config, cost, now_ms)
            return await asyncio.wait_for(self.store.spend(config, cost, now_ms), self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(
                f"Store round trip exceeded {int(self._timeout * 1000)}ms"
            ) from e
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(str(e)) from e

    def _degrade(self, config: BucketConfig, reason: str, now_ms: Optional[int]) -> ConsumeResult:
        policy = "denying" if self._fail_closed else "allowing"
        logger.warning(
            f"Rate limit store unavailable ({reason}); {policy} request for {config.storage_key}",
            extra=get_log_context(bucket=config.storage_key, decision=Decision.STORE_UNAVAILABLE.value),
        )
        return self._synthetic(
            config, Decision.STORE_UNAVAILABLE, allowed=not self._fail_closed, now_ms=now_ms
        )

    @staticmethod
    def _synthetic(
        config: BucketConfig, decision: Decision, *, allowed: bool, now_ms: Optional[int]
    ) -> ConsumeResult:
        """Result for a decision taken without consulting the store."""
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        return ConsumeResult(
            decision=decision,
            allowed=allowed,
            remaining=config.capacity if allowed else 0,
            reset_at_ms=now + config.refill_interval_ms,
            retry_after_ms=0 if allowed else config.refill_interval_ms,
            storage_key=config.storage_key,
            limit=config.capacity,
            observed_at_ms=now,
        )

    @staticmethod
    def _to_result(config: BucketConfig, outcome: SpendOutcome) -> ConsumeResult:
        return ConsumeResult(
            decision=Decision.ALLOWED if outcome.allowed else Decision.DENIED,
            allowed=outcome.allowed,
            remaining=min(config.capacity, max(0, outcome.remaining)),
            reset_at_ms=outcome.reset_at_ms,
            retry_after_ms=max(0, outcome.retry_after_ms),
            storage_key=config.storage_key,
            limit=config.capacity,
            observed_at_ms=outcome.now_ms,
        )

    async def ping(self) -> bool:
        return await self.store.ping()

    async def close(self) -> None:
        await self.store.close()
