"""Request-level rate limiting.

Options and results (``models``), caller identity (``identity``), the
evaluate/enforce facade with its FastAPI glue (``facade``) and the
audience-aware policy table (``policies``).
"""

from .facade import (
    RateLimitHeadersMiddleware,
    apply_rate_limit_headers,
    bucket_config,
    enforce,
    evaluate,
    evaluate_buckets,
    rate_limit,
    rate_limited,
    register_rate_limit_handlers,
    too_many_requests_response,
)
from .identity import (
    client_ip,
    compose,
    derive_identity,
    ip_identity,
    sanitize_name,
    user_identity,
)
from .models import RateLimitOptions, RateLimitResult, Scope
from .policies import (
    POLICIES,
    Audience,
    RateKind,
    RatePolicy,
    audience_from_affiliation,
    build_policies,
    enforce_policy,
    evaluate_policy,
)

__all__ = [
    # Models
    "RateLimitOptions",
    "RateLimitResult",
    "Scope",
    # Identity
    "client_ip",
    "compose",
    "derive_identity",
    "ip_identity",
    "sanitize_name",
    "user_identity",
    # Facade
    "RateLimitHeadersMiddleware",
    "apply_rate_limit_headers",
    "bucket_config",
    "enforce",
    "evaluate",
    "evaluate_buckets",
    "rate_limit",
    "rate_limited",
    "register_rate_limit_handlers",
    "too_many_requests_response",
    # Policies
    "POLICIES",
    "Audience",
    "RateKind",
    "RatePolicy",
    "audience_from_affiliation",
    "build_policies",
    "enforce_policy",
    "evaluate_policy",
]
