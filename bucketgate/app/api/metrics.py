"""Metrics endpoint for the rate limiter.

Counts rate limit decisions per limiter and exposes them in Prometheus text
format.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from bucketgate.app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

OUTCOMES = ("allowed", "denied", "shadowed", "degraded", "unsatisfiable", "bypassed")


@dataclass
class LimiterMetrics:
    """Decision counts for a single limiter."""

    allowed: int = 0
    denied: int = 0
    shadowed: int = 0
    degraded: int = 0
    unsatisfiable: int = 0
    bypassed: int = 0

    @property
    def total(self) -> int:
        return sum(getattr(self, outcome) for outcome in OUTCOMES)


@dataclass
class RateLimitMetrics:
    """Collects rate limit decision counts.

    Outcomes:
    - allowed: the bucket had tokens
    - denied: a 429 was (or would have been) returned
    - shadowed: denied by the bucket, let through by shadow mode
    - degraded: the store was unavailable and the degrade policy applied
    - unsatisfiable: the cost exceeds the bucket capacity
    - bypassed: the kill switch is on
    """

    _limiters: Dict[str, LimiterMetrics] = field(
        default_factory=lambda: defaultdict(LimiterMetrics)
    )
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _start_time: float = field(default_factory=time.time)

    async def record(self, limiter: str, outcome: str) -> None:
        """Record one decision.

        Args:
            limiter: Limiter name
            outcome: One of OUTCOMES
        """
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown rate limit outcome: {outcome}")
        async with self._lock:
            metrics = self._limiters[limiter]
            setattr(metrics, outcome, getattr(metrics, outcome) + 1)

    async def get_summary(self) -> Dict[str, Any]:
        async with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "limiters": {
                    name: {outcome: getattr(m, outcome) for outcome in OUTCOMES}
                    for name, m in self._limiters.items()
                },
            }

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        async with self._lock:
            lines = []

            lines.append("# HELP bucketgate_rate_limit_decisions_total Rate limit decisions by outcome")
            lines.append("# TYPE bucketgate_rate_limit_decisions_total counter")
            for name, metrics in sorted(self._limiters.items()):
                for outcome in OUTCOMES:
                    lines.append(
                        f'bucketgate_rate_limit_decisions_total{{limiter="{name}",outcome="{outcome}"}} '
                        f"{getattr(metrics, outcome)}"
                    )

            lines.append("\n# HELP bucketgate_rate_limit_checks_total Rate limit evaluations")
            lines.append("# TYPE bucketgate_rate_limit_checks_total counter")
            for name, metrics in sorted(self._limiters.items()):
                lines.append(f'bucketgate_rate_limit_checks_total{{limiter="{name}"}} {metrics.total}')

            lines.append("\n# HELP bucketgate_uptime_seconds Uptime in seconds")
            lines.append("# TYPE bucketgate_uptime_seconds gauge")
            lines.append(f"bucketgate_uptime_seconds{{}} {round(time.time() - self._start_time, 2)}")

            return "\n".join(lines) + "\n"


_metrics_collector: Optional[RateLimitMetrics] = None


def get_metrics_collector() -> RateLimitMetrics:
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = RateLimitMetrics()
    return _metrics_collector


def reset_metrics_collector() -> None:
    """Reset the global metrics collector (useful for testing)."""
    global _metrics_collector
    _metrics_collector = None


async def record_rate_limit_decision(limiter: str, outcome: str) -> None:
    """Convenience wrapper used by the rate limit facade."""
    await get_metrics_collector().record(limiter, outcome)


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics() -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint."""
    content = await get_metrics_collector().get_prometheus_metrics()
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )


@router.get("/stats")
async def rate_limit_stats() -> dict[str, Any]:
    return await get_metrics_collector().get_summary()
