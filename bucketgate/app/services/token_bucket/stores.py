"""Bucket state stores.

``RedisBucketStore`` is the distributed store used in production: every spend
is one EVALSHA of ``TOKEN_BUCKET_SCRIPT``. ``InMemoryBucketStore`` runs the
same math in-process for single-instance development and tests.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional

from redis.exceptions import NoScriptError, RedisError

from bucketgate.app.core.logging import get_logger
from bucketgate.app.core.store import StoreConnection
from bucketgate.app.exceptions import StoreUnavailableError

from .algorithm import SpendOutcome, spend
from .models import BucketConfig, BucketState
from .redis_lua import TOKEN_BUCKET_SCRIPT

logger = get_logger(__name__)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class BucketStore(ABC):
    """Abstract base class for bucket stores."""

    @abstractmethod
    async def spend(
        self, config: BucketConfig, cost: int, now_ms: Optional[int] = None
    ) -> SpendOutcome:
        """Atomically refill and spend ``cost`` tokens.

        Args:
            config: Validated bucket configuration
            cost: Tokens to spend; 0 reads the state without writing
            now_ms: Explicit clock override; None uses the store's clock

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        pass

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class InMemoryBucketStore(BucketStore):
    """In-process bucket store.

    Suitable for single-instance deployments and tests. Entries expire after
    the bucket TTL and the oldest 20% are evicted once ``max_entries`` is
    exceeded.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self._clock = clock or _wall_clock_ms
        self._max_entries = max_entries
        # key -> (state, expires_at_ms)
        self._buckets: OrderedDict[str, tuple[BucketState, int]] = OrderedDict()
        self._lock = asyncio.Lock()

    def _enforce_lru_limit(self) -> None:
        if len(self._buckets) > self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(remove_count):
                self._buckets.popitem(last=False)

    async def spend(
        self, config: BucketConfig, cost: int, now_ms: Optional[int] = None
    ) -> SpendOutcome:
        async with self._lock:
            now = self._clock() if now_ms is None else now_ms
            key = config.storage_key

            entry = self._buckets.get(key)
            state: Optional[BucketState] = None
            if entry is not None:
                state, expires_at = entry
                if expires_at <= now:
                    state = None
                    del self._buckets[key]

            outcome = spend(state, config, cost, now)
            if outcome.state is not None:
                self._buckets[key] = (outcome.state, now + config.ttl_ms)
                self._buckets.move_to_end(key)
                self._enforce_lru_limit()
            return outcome

    def snapshot(self, key: str) -> Optional[BucketState]:
        """Stored state for ``key`` (expired or not); used by tests and debugging."""
        entry = self._buckets.get(key)
        return entry[0] if entry else None

    async def cleanup(self) -> int:
        """Drop expired buckets; returns how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, (_, expires_at) in self._buckets.items() if expires_at <= now]
            for key in expired:
                del self._buckets[key]
            return len(expired)

    async def close(self) -> None:
        async with self._lock:
            self._buckets.clear()


class RedisBucketStore(BucketStore):
    """Redis-backed distributed bucket store.

    Loads the Lua script once per connection and runs it with EVALSHA. If the
    server lost its script cache (restart, failover) the script is reloaded
    and the call retried once.
    """

    def __init__(self, connection: StoreConnection):
        self._connection = connection
        self._sha: Optional[str] = None

    async def _load_script(self, client: Any) -> str:
        sha = await client.script_load(TOKEN_BUCKET_SCRIPT)
        if isinstance(sha, bytes):
            sha = sha.decode()
        self._sha = sha
        return sha

    async def _evalsha(self, client: Any, config: BucketConfig, cost: int, now_ms: Optional[int]) -> Any:
        sha = self._sha or await self._load_script(client)
        args = (
            config.capacity,
            config.refill_amount,
            config.refill_interval_ms,
            cost,
            -1 if now_ms is None else now_ms,
            config.ttl_ms,
            config.mode.value,
        )
        try:
            return await client.evalsha(sha, 1, config.storage_key, *args)
        except NoScriptError:
            logger.info("Token bucket script missing on server, reloading")
            sha = await self._load_script(client)
            return await client.evalsha(sha, 1, config.storage_key, *args)

    async def spend(
        self, config: BucketConfig, cost: int, now_ms: Optional[int] = None
    ) -> SpendOutcome:
        client = await self._connection.get_connection()
        try:
            raw = await self._evalsha(client, config, cost, now_ms)
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Token bucket script failed: {e}") from e
        return self._parse(raw)

    @staticmethod
    def _parse(raw: Any) -> SpendOutcome:
        """Coerce the script reply into a SpendOutcome."""
        try:
            allowed, remaining, reset_at_ms, retry_after_ms, now_ms = (int(v) for v in raw)
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError(f"Bad token bucket reply: {raw!r}") from e
        return SpendOutcome(
            allowed=allowed == 1,
            remaining=remaining,
            reset_at_ms=reset_at_ms,
            retry_after_ms=retry_after_ms,
            now_ms=now_ms,
            state=None,
        )

    async def ping(self) -> bool:
        return await self._connection.ping()

    async def close(self) -> None:
        await self._connection.close()
