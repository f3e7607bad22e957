"""Tests for audience-aware rate limit policies."""

import hashlib

import pytest
from starlette.requests import Request

from bucketgate.app.exceptions import ConfigError, RateLimitExceeded
from bucketgate.app.middleware.rate_limit import (
    POLICIES,
    Audience,
    RateKind,
    RatePolicy,
    audience_from_affiliation,
    build_policies,
    enforce_policy,
    evaluate_policy,
)
from bucketgate.app.services.token_bucket import RefillMode


def make_request(ip="198.51.100.10", headers=None) -> Request:
    raw = [(b"x-forwarded-for", ip.encode())]
    raw += [(k.encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "headers": raw, "client": ("10.0.0.1", 1), "state": {}})


def sha24(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:24]


class TestPolicyTable:
    """Tests for the policy table."""

    def test_every_kind_has_both_audiences(self):
        for kind in RateKind:
            assert set(POLICIES[kind]) == {Audience.BOWDOIN, Audience.COMMUNITY}

    def test_campus_limits_at_least_community(self):
        for kind in RateKind:
            assert POLICIES[kind][Audience.BOWDOIN].capacity >= POLICIES[kind][Audience.COMMUNITY].capacity

    def test_known_values(self):
        assert POLICIES[RateKind.CREATE_LISTING][Audience.COMMUNITY] == RatePolicy(5, 5, 60)
        assert POLICIES[RateKind.VERIFY_EMAIL][Audience.BOWDOIN] == RatePolicy(3, 3, 3600)

    def test_multiplier_scales_capacity(self):
        doubled = build_policies(2.0)
        assert doubled[RateKind.SEARCH][Audience.BOWDOIN].capacity == 240
        assert doubled[RateKind.SEARCH][Audience.BOWDOIN].refill_amount == 240

    def test_multiplier_never_drops_to_zero(self):
        tiny = build_policies(0.01)
        assert tiny[RateKind.VERIFY_EMAIL][Audience.COMMUNITY].capacity == 1

    def test_burst_policy_uses_continuous_refill(self):
        policy = RatePolicy(capacity=10, refill_amount=10, refill_interval_sec=60, burst_multiplier=1.5)
        bucket = policy.bucket("u:x", "rl:sec:test")
        assert bucket.capacity == 15
        assert bucket.mode is RefillMode.CONTINUOUS
        bucket.validate()

    def test_plain_policy_uses_fixed_window(self):
        bucket = RatePolicy(5, 5, 60).bucket("u:x", "rl:sec:test")
        assert bucket.mode is RefillMode.FIXED_WINDOW


class TestAudienceFromAffiliation:
    """Tests for audience_from_affiliation."""

    @pytest.mark.parametrize(
        "affiliation,expected",
        [
            (None, Audience.COMMUNITY),
            ("", Audience.COMMUNITY),
            ("community", Audience.COMMUNITY),
            ("Bowdoin", Audience.BOWDOIN),
            ("student", Audience.BOWDOIN),
            ("STAFF", Audience.BOWDOIN),
            ("admin", Audience.BOWDOIN),
        ],
    )
    def test_mapping(self, affiliation, expected):
        assert audience_from_affiliation(affiliation) is expected


class TestEnforcePolicy:
    """Tests for enforce_policy / evaluate_policy."""

    @pytest.mark.asyncio
    async def test_keyed_by_hashed_user(self, engine):
        result = await evaluate_policy(
            make_request(), RateKind.CREATE_LISTING, Audience.COMMUNITY, user_id="user-1", engine=engine
        )
        keys = [check.storage_key for check in result.checks]
        assert keys == [
            f"rl:sec:create_listing:community:u:{sha24('user-1')}",
            f"rl:sec:_global_ip:{sha24('198.51.100.10')}",
        ]
        assert "user-1" not in "".join(keys)

    @pytest.mark.asyncio
    async def test_keyed_by_hashed_ip_when_anonymous(self, engine):
        result = await evaluate_policy(make_request(), RateKind.SEARCH, Audience.COMMUNITY, engine=engine)
        assert result.checks[0].storage_key == f"rl:sec:search:community:ip:{sha24('198.51.100.10')}"

    @pytest.mark.asyncio
    async def test_user_from_request_headers(self, engine):
        result = await evaluate_policy(
            make_request(headers={"x-user-id": "user-9"}), RateKind.SEARCH, Audience.BOWDOIN, engine=engine
        )
        assert result.checks[0].storage_key.endswith(f"u:{sha24('user-9')}")

    @pytest.mark.asyncio
    async def test_blocks_after_policy_capacity(self, engine):
        request = make_request()
        for _ in range(5):
            await enforce_policy(request, RateKind.CREATE_LISTING, Audience.COMMUNITY, user_id="u1", engine=engine)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await enforce_policy(request, RateKind.CREATE_LISTING, Audience.COMMUNITY, user_id="u1", engine=engine)
        assert exc_info.value.limiter == "create_listing:community"

    @pytest.mark.asyncio
    async def test_global_ip_gate_applies_across_users(self, engine):
        request = make_request(ip="203.0.113.99")
        for i in range(120):
            await enforce_policy(request, RateKind.SEARCH, Audience.BOWDOIN, user_id=f"user-{i}", engine=engine)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await enforce_policy(request, RateKind.SEARCH, Audience.BOWDOIN, user_id="fresh", engine=engine)
        assert exc_info.value.limiter == "_global_ip"

    @pytest.mark.asyncio
    async def test_tokens_cost(self, engine):
        result = await evaluate_policy(
            make_request(), RateKind.PRESIGN_UPLOAD, Audience.COMMUNITY, user_id="u1", tokens=4, engine=engine
        )
        assert result.checks[0].remaining == 6

    @pytest.mark.asyncio
    async def test_unknown_kind(self, engine):
        with pytest.raises(ConfigError):
            await evaluate_policy(make_request(), "mine_bitcoin", Audience.COMMUNITY, engine=engine)
