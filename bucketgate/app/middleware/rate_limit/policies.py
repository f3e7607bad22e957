"""Audience-aware rate limit policies.

Campus (``bowdoin``) accounts get more generous limits than ``community``
accounts. Every policy check is paired with a coarse per-IP gate that
absorbs anonymous spray regardless of authentication.

    result = await enforce_policy(request, RateKind.SEND_MESSAGE, Audience.COMMUNITY, user_id=uid)
"""

import hashlib
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

from starlette.requests import Request

from bucketgate.app.core.config import settings
from bucketgate.app.exceptions import ConfigError, RateLimitExceeded
from bucketgate.app.services.token_bucket import BucketConfig, RefillMode, TokenBucketEngine

from .facade import evaluate_buckets
from .identity import client_ip, user_id as request_user_id
from .models import RateLimitOptions, RateLimitResult

POLICY_NAMESPACE = "rl:sec"
GLOBAL_IP_LIMITER = "_global_ip"
UNKNOWN_IP = "0.0.0.0"


class Audience(str, Enum):
    BOWDOIN = "bowdoin"
    COMMUNITY = "community"


class RateKind(str, Enum):
    CREATE_LISTING = "create_listing"
    SEND_MESSAGE = "send_message"
    SEARCH = "search"
    VERIFY_EMAIL = "verify_email"
    AUTH_ATTEMPT = "auth_attempt"
    PRESIGN_UPLOAD = "presign_upload"


@dataclass(frozen=True)
class RatePolicy:
    """Shape of one audience/kind limit.

    Attributes:
        capacity: Max tokens in the bucket
        refill_amount: Tokens restored every ``refill_interval_sec``
        refill_interval_sec: Refill period in seconds
        burst_multiplier: Optional factor (> 1) applied to capacity only
    """

    capacity: int
    refill_amount: int
    refill_interval_sec: int
    burst_multiplier: Optional[float] = None

    @property
    def effective_capacity(self) -> int:
        if self.burst_multiplier and self.burst_multiplier > 1:
            return math.ceil(self.capacity * self.burst_multiplier)
        return self.capacity

    def scaled(self, multiplier: float) -> "RatePolicy":
        return replace(
            self,
            capacity=max(1, round(self.capacity * multiplier)),
            refill_amount=max(1, round(self.refill_amount * multiplier)),
        )

    def bucket(self, key: str, namespace: str) -> BucketConfig:
        """Bucket for this policy; partial refills (bursts) use continuous mode."""
        capacity = self.effective_capacity
        return BucketConfig(
            key=key,
            capacity=capacity,
            refill_amount=self.refill_amount,
            refill_interval_ms=self.refill_interval_sec * 1000,
            namespace=namespace,
            mode=RefillMode.FIXED_WINDOW if capacity == self.refill_amount else RefillMode.CONTINUOUS,
        )


def _window(limit: int, seconds: int) -> RatePolicy:
    return RatePolicy(capacity=limit, refill_amount=limit, refill_interval_sec=seconds)


BASE_POLICIES: Dict[RateKind, Dict[Audience, RatePolicy]] = {
    RateKind.CREATE_LISTING: {Audience.BOWDOIN: _window(10, 60), Audience.COMMUNITY: _window(5, 60)},
    RateKind.SEND_MESSAGE: {Audience.BOWDOIN: _window(60, 60), Audience.COMMUNITY: _window(25, 60)},
    RateKind.SEARCH: {Audience.BOWDOIN: _window(120, 60), Audience.COMMUNITY: _window(60, 60)},
    RateKind.VERIFY_EMAIL: {Audience.BOWDOIN: _window(3, 3600), Audience.COMMUNITY: _window(2, 3600)},
    RateKind.AUTH_ATTEMPT: {Audience.BOWDOIN: _window(20, 600), Audience.COMMUNITY: _window(10, 600)},
    RateKind.PRESIGN_UPLOAD: {Audience.BOWDOIN: _window(30, 300), Audience.COMMUNITY: _window(10, 300)},
}

BASE_GLOBAL_IP_POLICY = _window(120, 60)


def build_policies(multiplier: float = 1.0) -> Dict[RateKind, Dict[Audience, RatePolicy]]:
    """Policy table with every capacity scaled by ``multiplier``."""
    return {
        kind: {audience: policy.scaled(multiplier) for audience, policy in per_audience.items()}
        for kind, per_audience in BASE_POLICIES.items()
    }


POLICIES = build_policies(settings.rate_limit_multiplier)
GLOBAL_IP_POLICY = BASE_GLOBAL_IP_POLICY.scaled(settings.rate_limit_multiplier)


def audience_from_affiliation(affiliation: Optional[str]) -> Audience:
    """Map a user affiliation string (role, SSO group...) to an Audience."""
    if not affiliation:
        return Audience.COMMUNITY
    value = str(affiliation).lower()
    if any(marker in value for marker in ("bowdoin", "student", "staff", "admin")):
        return Audience.BOWDOIN
    return Audience.COMMUNITY


def policy_name(kind: RateKind, audience: Audience) -> str:
    return f"{RateKind(kind).value}:{Audience(audience).value}"


def _sha24(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:24]


async def evaluate_policy(
    request: Request,
    kind: RateKind,
    audience: Audience,
    user_id: Optional[str] = None,
    tokens: int = 1,
    *,
    engine: Optional[TokenBucketEngine] = None,
) -> RateLimitResult:
    """Consume from the kind/audience bucket and the global per-IP gate.

    The kind bucket is keyed by the hashed user id when known, else by the
    hashed client IP. The request is allowed only if both buckets allow it.
    """
    try:
        policy = POLICIES[RateKind(kind)][Audience(audience)]
    except ValueError as e:
        raise ConfigError(f"Unknown rate policy {kind!r}/{audience!r}") from e

    ip = client_ip(request) or UNKNOWN_IP
    uid = user_id or request_user_id(request)
    subject = f"u:{_sha24(uid)}" if uid else f"ip:{_sha24(ip)}"

    primary = policy.bucket(subject, f"{POLICY_NAMESPACE}:{RateKind(kind).value}:{Audience(audience).value}")
    gate = GLOBAL_IP_POLICY.bucket(_sha24(ip), f"{POLICY_NAMESPACE}:{GLOBAL_IP_LIMITER}")

    return await evaluate_buckets(
        request,
        [
            (
                RateLimitOptions(
                    name=policy_name(kind, audience),
                    limit=primary.capacity,
                    window_sec=policy.refill_interval_sec,
                    cost=tokens,
                    mode=primary.mode,
                ),
                primary,
            ),
            (
                RateLimitOptions(
                    name=GLOBAL_IP_LIMITER,
                    limit=gate.capacity,
                    window_sec=GLOBAL_IP_POLICY.refill_interval_sec,
                ),
                gate,
            ),
        ],
        engine=engine,
    )


async def enforce_policy(
    request: Request,
    kind: RateKind,
    audience: Audience,
    user_id: Optional[str] = None,
    tokens: int = 1,
    *,
    engine: Optional[TokenBucketEngine] = None,
) -> RateLimitResult:
    """Evaluate a policy and raise when the request must be blocked.

    Raises:
        RateLimitExceeded: If either bucket denied the request
        ConfigError: For unknown kinds/audiences or an invalid ``tokens``
    """
    result = await evaluate_policy(request, kind, audience, user_id, tokens, engine=engine)
    if not result.allowed:
        raise RateLimitExceeded(result)
    return result
