"""Token bucket refill-then-spend math.

Python rendition of ``TOKEN_BUCKET_SCRIPT``; the in-memory store runs it under
a lock, Redis runs the Lua version atomically. Keep the two in step.
"""

import math
from dataclasses import dataclass
from typing import Optional

from .models import BucketConfig, BucketState, RefillMode


@dataclass(frozen=True)
class SpendOutcome:
    """Raw result of ``spend``.

    ``state`` is the bucket state to persist, or None when the stored state
    must be left untouched (denials and peeks).
    """

    allowed: bool
    remaining: int
    reset_at_ms: int
    retry_after_ms: int
    now_ms: int
    state: Optional[BucketState]


def refill(state: Optional[BucketState], config: BucketConfig, now_ms: int) -> BucketState:
    """Apply the refill owed since ``state`` was recorded."""
    if state is None:
        return BucketState(tokens=float(config.capacity), window_start_ms=now_ms)

    tokens = min(float(state.tokens), float(config.capacity))
    window_start = state.window_start_ms
    elapsed = max(0, now_ms - window_start)

    if config.mode is RefillMode.FIXED_WINDOW:
        if elapsed >= config.refill_interval_ms:
            windows = elapsed // config.refill_interval_ms
            window_start += windows * config.refill_interval_ms
            tokens = float(config.capacity)
    elif elapsed > 0:
        gained = elapsed * config.refill_amount / config.refill_interval_ms
        tokens = min(float(config.capacity), tokens + gained)
        window_start = now_ms

    return BucketState(tokens=tokens, window_start_ms=window_start)


def spend(
    state: Optional[BucketState], config: BucketConfig, cost: int, now_ms: int
) -> SpendOutcome:
    """Attempt to take ``cost`` tokens; ``cost == 0`` only peeks."""
    current = refill(state, config, now_ms)
    tokens = current.tokens
    need = max(cost, 1)

    allowed = tokens >= need
    persisted: Optional[BucketState] = None
    if allowed and cost > 0:
        tokens -= cost
        persisted = BucketState(tokens=tokens, window_start_ms=current.window_start_ms)

    interval = config.refill_interval_ms
    if config.mode is RefillMode.FIXED_WINDOW:
        reset_at_ms = current.window_start_ms + interval
    else:
        deficit = config.capacity - tokens
        reset_at_ms = now_ms + math.ceil(deficit * interval / config.refill_amount)

    retry_after_ms = 0
    if not allowed:
        if config.mode is RefillMode.FIXED_WINDOW:
            retry_after_ms = max(0, reset_at_ms - now_ms)
        else:
            retry_after_ms = math.ceil((need - tokens) * interval / config.refill_amount)

    remaining = min(config.capacity, max(0, math.floor(tokens)))
    return SpendOutcome(
        allowed=allowed,
        remaining=remaining,
        reset_at_ms=int(reset_at_ms),
        retry_after_ms=int(retry_after_ms),
        now_ms=now_ms,
        state=persisted,
    )
