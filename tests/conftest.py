"""Shared fixtures: a controllable clock and a fake Redis that runs the bucket math."""

import asyncio
import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple

import pytest
from redis.exceptions import NoScriptError

from bucketgate.app.api.metrics import reset_metrics_collector
from bucketgate.app.services.token_bucket import (
    BucketConfig,
    BucketState,
    InMemoryBucketStore,
    RefillMode,
    TokenBucketEngine,
    spend,
)

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start_ms: int = START_MS):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class FakeRedis:
    """Minimal async Redis stand-in.

    ``evalsha`` executes the token bucket math without awaiting in between,
    which makes it atomic on the event loop just like a Lua script on a real
    server. Set ``fail_with`` to make every call raise.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.buckets: Dict[str, Tuple[BucketState, int]] = {}
        self.scripts: Dict[str, str] = {}
        self.evalsha_calls: List[Tuple[Any, ...]] = []
        self.script_loads = 0
        self.fail_with: Optional[BaseException] = None
        self.closed = False

    async def ping(self) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        return True

    async def script_load(self, script: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.script_loads += 1
        sha = hashlib.sha1(script.encode()).hexdigest()
        self.scripts[sha] = script
        return sha

    async def evalsha(self, sha: str, numkeys: int, *keys_and_args: Any) -> List[int]:
        # Yield first so concurrent callers interleave before the atomic body
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        if sha not in self.scripts:
            raise NoScriptError("NOSCRIPT No matching script. Please use EVAL.")
        self.evalsha_calls.append((sha, numkeys) + keys_and_args)

        key = keys_and_args[0]
        capacity, refill_amount, interval_ms, cost, now_ms, ttl_ms, mode = keys_and_args[1:]
        now = self.clock() if int(now_ms) < 0 else int(now_ms)

        state = None
        entry = self.buckets.get(key)
        if entry is not None and entry[1] > now:
            state = entry[0]

        config = BucketConfig(
            key="fake",
            capacity=int(capacity),
            refill_amount=int(refill_amount),
            refill_interval_ms=int(interval_ms),
            mode=RefillMode(mode),
        )
        outcome = spend(state, config, int(cost), now)
        if outcome.state is not None:
            self.buckets[key] = (outcome.state, now + int(ttl_ms))
        return [
            1 if outcome.allowed else 0,
            outcome.remaining,
            outcome.reset_at_ms,
            outcome.retry_after_ms,
            outcome.now_ms,
        ]

    def flush_scripts(self) -> None:
        """Simulate a server restart losing the script cache."""
        self.scripts.clear()

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _propagate_logs():
    """Let caplog see records even after dictConfig turned propagation off."""
    logger = logging.getLogger("bucketgate")
    previous = logger.propagate
    logger.propagate = True
    yield
    logger.propagate = previous


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics_collector()
    yield
    reset_metrics_collector()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def memory_store(clock) -> InMemoryBucketStore:
    return InMemoryBucketStore(clock=clock)


@pytest.fixture
def engine(memory_store) -> TokenBucketEngine:
    return TokenBucketEngine(memory_store)
