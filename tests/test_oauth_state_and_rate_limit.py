"""Tests for KV-backed OAuth handshake state and fixed-window rate limiting."""

import pytest

from quillpress.service.errors import InvalidOAuthState, RateLimitedError
from quillpress.service.oauth_state import OAuthHandshakeState
from quillpress.service.rate_limit import FixedWindowRateLimiter


@pytest.fixture
def handshake(kv):
    return OAuthHandshakeState(kv)


class TestOAuthHandshakeState:
    def test_issue_stores_marker_with_ttl(self, handshake, kv, clock):
        state = handshake.issue()
        assert kv.get(f"oauth_state_{state}") == "valid"
        clock.advance(599)
        assert kv.get(f"oauth_state_{state}") == "valid"
        clock.advance(1)
        assert kv.get(f"oauth_state_{state}") is None

    def test_states_are_unique(self, handshake):
        assert handshake.issue() != handshake.issue()

    def test_consume_is_single_use(self, handshake):
        state = handshake.issue()
        assert handshake.consume(state) is True
        assert handshake.consume(state) is False

    def test_consume_unknown_or_empty(self, handshake):
        assert handshake.consume("never-issued") is False
        assert handshake.consume("") is False

    def test_expired_state_is_rejected(self, handshake, clock):
        state = handshake.issue()
        clock.advance(601)
        with pytest.raises(InvalidOAuthState):
            handshake.require(state)

    def test_require_raises_coarse_401(self, handshake):
        with pytest.raises(InvalidOAuthState) as excinfo:
            handshake.require("forged")
        assert excinfo.value.status_code == 401
        assert excinfo.value.message == "invalid credentials"

    def test_custom_ttl(self, kv, clock):
        short = OAuthHandshakeState(kv, ttl_seconds=5)
        state = short.issue()
        clock.advance(5)
        assert short.consume(state) is False


@pytest.fixture
def limiter(kv, clock):
    return FixedWindowRateLimiter(kv, clock=clock)


class TestFixedWindowRateLimiter:
    def test_allows_up_to_limit(self, limiter):
        results = [limiter.hit("login:1.2.3.4", 3, 60) for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    def test_keys_are_independent(self, limiter):
        limiter.hit("a", 1, 60)
        assert limiter.hit("b", 1, 60).allowed

    def test_window_resets(self, limiter, clock):
        clock.advance(60 - int(clock.now()) % 60)
        limiter.hit("k", 1, 60)
        assert not limiter.hit("k", 1, 60).allowed
        clock.advance(60)
        assert limiter.hit("k", 1, 60).allowed

    def test_counter_key_layout(self, limiter, kv, clock):
        now = int(clock.now())
        limiter.hit("refresh:client", 5, 60)
        assert kv.get(f"rate_limit:refresh:client:{now - now % 60}") == "1"

    def test_non_positive_limit_disables(self, limiter):
        for _ in range(5):
            assert limiter.hit("k", 0, 60).allowed

    def test_enforce_raises_429_with_retry_after(self, limiter):
        limiter.enforce("k", 1, 60)
        with pytest.raises(RateLimitedError) as excinfo:
            limiter.enforce("k", 1, 60)
        assert excinfo.value.status_code == 429
        assert 0 < excinfo.value.detail["retry_after"] <= 60

    def test_headers(self, limiter):
        info = limiter.hit("k", 10, 60)
        headers = info.headers()
        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "9"
