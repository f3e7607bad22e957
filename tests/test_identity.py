"""Tests for caller identity derivation and composition."""

import asyncio
from types import SimpleNamespace

import pytest
from starlette.requests import Request

from bucketgate.app.exceptions import ConfigError
from bucketgate.app.middleware.rate_limit import (
    client_ip,
    compose,
    derive_identity,
    ip_identity,
    sanitize_name,
    user_identity,
)
from bucketgate.app.middleware.rate_limit.identity import MAX_COMPONENT_LENGTH
from bucketgate.app.services.token_bucket import BucketConfig, TokenBucketEngine


def make_request(headers=None, client=("10.0.0.9", 5000), user_id=None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "state": {},
    }
    request = Request(scope)
    if user_id is not None:
        request.state.user_id = user_id
    return request


class TestSanitizeName:
    """Tests for sanitize_name."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("listings:create", "listings:create"),
            ("Auth Email Verify", "auth-email-verify"),
            ("admin/reports*list", "admin-reports-list"),
            ("  Messages\tSend  ", "messages-send"),
            ("upload_presign", "upload_presign"),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert sanitize_name(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "***"])
    def test_empty_rejected(self, raw):
        with pytest.raises(ConfigError):
            sanitize_name(raw)


class TestDeriveIdentity:
    """Identity precedence."""

    def test_explicit_key_wins(self):
        request = make_request({"x-user-id": "42"}, user_id="7")
        assert derive_identity(request, "tenant:acme") == "tenant:acme"

    def test_request_state_user(self):
        request = make_request({"x-user-id": "42"}, user_id="7")
        assert derive_identity(request) == "u:7"

    @pytest.mark.parametrize("header", ["x-user-id", "x-userid", "x-auth-user"])
    def test_user_id_headers(self, header):
        request = make_request({header: "abc", "x-forwarded-for": "1.2.3.4"})
        assert derive_identity(request) == "u:abc"

    def test_forwarded_for_first_valid_ip(self):
        request = make_request({"x-forwarded-for": "unknown, 203.0.113.7, 10.0.0.1"})
        assert derive_identity(request) == "ip:203.0.113.7"

    def test_secondary_ip_headers(self):
        request = make_request({"cf-connecting-ip": "198.51.100.2", "x-real-ip": "198.51.100.3"})
        assert derive_identity(request) == "ip:198.51.100.2"

    def test_real_ip_when_no_cf(self):
        request = make_request({"x-real-ip": "198.51.100.3"})
        assert derive_identity(request) == "ip:198.51.100.3"

    def test_socket_peer(self):
        assert derive_identity(make_request()) == "ip:10.0.0.9"

    def test_ipv6_normalized(self):
        request = make_request({"x-forwarded-for": "2001:DB8::0001"})
        assert derive_identity(request) == "ip:2001:db8::1"

    def test_user_agent_hash_last_resort(self):
        first = derive_identity(make_request({"user-agent": "curl/8.0"}, client=None))
        second = derive_identity(make_request({"user-agent": "curl/8.0"}, client=None))
        other = derive_identity(make_request({"user-agent": "httpie/3"}, client=None))
        assert first.startswith("ua:")
        assert first == second
        assert first != other

    def test_never_empty(self):
        assert derive_identity(make_request(client=None))

    def test_long_components_hashed(self):
        request = make_request({"x-user-id": "x" * 1000})
        identity = derive_identity(request)
        assert identity.startswith("u:h:")
        assert len(identity) < MAX_COMPONENT_LENGTH

    def test_scoped_helpers(self):
        request = make_request({"x-user-id": "42", "x-forwarded-for": "1.2.3.4"})
        assert user_identity(request) == "u:42"
        assert ip_identity(request) == "ip:1.2.3.4"
        assert client_ip(request) == "1.2.3.4"

    def test_user_identity_absent(self):
        assert user_identity(make_request()) is None


class TestCompose:
    """Tests for compose."""

    @pytest.mark.asyncio
    async def test_all_must_allow(self, engine):
        tight = BucketConfig.fixed_window("u:1", limit=1, window_ms=60_000, namespace="rl:user")
        loose = BucketConfig.fixed_window("ip:1.2.3.4", limit=10, window_ms=60_000, namespace="rl:ip")

        allowed, results = await compose(engine, [(tight, 1), (loose, 1)])
        assert allowed is True
        assert [r.remaining for r in results] == [0, 9]

        allowed, results = await compose(engine, [(tight, 1), (loose, 1)])
        assert allowed is False
        assert results[0].allowed is False
        # Passed sibling keeps its spend
        assert results[1].remaining == 8

    @pytest.mark.asyncio
    async def test_checks_run_concurrently(self):
        class RecordingEngine(TokenBucketEngine):
            def __init__(self):
                self.active = 0
                self.peak = 0

            async def consume(self, config, cost=1, *, now_ms=None):
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return SimpleNamespace(allowed=True)

        recording = RecordingEngine()
        configs = [
            (BucketConfig.fixed_window(f"u:{i}", limit=1, window_ms=1000), 1) for i in range(3)
        ]
        allowed, _ = await compose(recording, configs)
        assert allowed is True
        assert recording.peak == 3
