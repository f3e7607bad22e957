"""Caller identity derivation and multi-bucket composition."""

import asyncio
import hashlib
import ipaddress
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from starlette.requests import Request

from bucketgate.app.core.config import settings
from bucketgate.app.exceptions import ConfigError
from bucketgate.app.services.token_bucket import BucketConfig, ConsumeResult, TokenBucketEngine

# Identity components longer than this are replaced by a hash so a hostile
# header cannot blow up key sizes in the store.
MAX_COMPONENT_LENGTH = 128

SECONDARY_IP_HEADERS = ("cf-connecting-ip", "x-real-ip")

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9:_-]")


def _digest(value: str, length: int = 32) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:length]


def _bounded(value: str) -> str:
    if len(value) > MAX_COMPONENT_LENGTH:
        return f"h:{_digest(value)}"
    return value


def sanitize_name(name: str) -> str:
    """Normalize a limiter name for use in a storage namespace.

    Raises:
        ConfigError: If nothing usable is left after normalization
    """
    cleaned = _DISALLOWED.sub("-", _WHITESPACE.sub("-", (name or "").strip().lower()))
    if not cleaned.strip("-"):
        raise ConfigError(f"Rate limiter name {name!r} is empty after sanitizing")
    return cleaned


def _valid_ip(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    candidate = candidate.strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def client_ip(request: Request) -> Optional[str]:
    """Best-effort client IP.

    Order: first valid address in X-Forwarded-For, then CF-Connecting-IP /
    X-Real-IP, then the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        for part in forwarded.split(","):
            ip = _valid_ip(part)
            if ip:
                return ip

    for header in SECONDARY_IP_HEADERS:
        ip = _valid_ip(request.headers.get(header))
        if ip:
            return ip

    if request.client and request.client.host:
        return _valid_ip(request.client.host) or request.client.host
    return None


def user_id(request: Request, header_names: Optional[Sequence[str]] = None) -> Optional[str]:
    """Authenticated user id set by upstream auth, if any."""
    state_user = getattr(request.state, "user_id", None)
    if state_user:
        return str(state_user)

    for header in header_names if header_names is not None else settings.rate_limit_user_id_headers:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    return None


def _user_agent_identity(request: Request) -> str:
    return f"ua:{_digest(request.headers.get('user-agent') or 'unknown', 16)}"


def user_identity(request: Request) -> Optional[str]:
    uid = user_id(request)
    return f"u:{_bounded(uid)}" if uid else None


def ip_identity(request: Request) -> str:
    ip = client_ip(request)
    return f"ip:{_bounded(ip)}" if ip else _user_agent_identity(request)


def derive_identity(request: Request, explicit_key: Optional[str] = None) -> str:
    """Stable identity for the caller; never empty.

    Precedence: explicit key, authenticated user id, client IP, then a hash
    of the user agent.
    """
    if explicit_key:
        return _bounded(explicit_key)
    return user_identity(request) or ip_identity(request)


async def compose(
    engine: TokenBucketEngine,
    checks: Iterable[Tuple[BucketConfig, int]],
) -> Tuple[bool, List[ConsumeResult]]:
    """Consume from several buckets concurrently.

    The request is allowed only if every bucket allows it. Tokens already
    taken from buckets that passed are not refunded when another one denies.

    Returns:
        Tuple of (all allowed, results in input order)
    """
    results = await asyncio.gather(
        *(engine.consume(config, cost) for config, cost in checks)
    )
    return all(r.allowed for r in results), list(results)
