"""Tests for rate limiting and user tokens."""

from datetime import timedelta

import pytest

from saferewriter.api.security import RateLimit, RateLimiter, create_access_token, decode_access_token
from saferewriter.errors import AuthenticationError
from saferewriter.tests.doubles import FakeClock


class TestRateLimiter:
    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter(clock=clock)

    def test_allows_up_to_limit(self, limiter):
        results = [limiter.is_allowed("ip:1", limit=3, window=60) for _ in range(4)]
        assert results == [(True, 2), (True, 1), (True, 0), (False, 0)]

    def test_keys_are_independent(self, limiter):
        assert limiter.is_allowed("a", limit=1, window=60)[0] is True
        assert limiter.is_allowed("b", limit=1, window=60)[0] is True
        assert limiter.is_allowed("a", limit=1, window=60)[0] is False

    def test_window_slides(self, limiter, clock):
        limiter.is_allowed("k", limit=1, window=60)
        clock.advance(30)
        assert limiter.is_allowed("k", limit=1, window=60)[0] is False
        assert limiter.get_retry_after("k", 60) == 30

        clock.advance(31)
        assert limiter.is_allowed("k", limit=1, window=60)[0] is True

    def test_retry_after_for_unknown_key(self, limiter):
        assert limiter.get_retry_after("nobody", 60) == 0

    def test_reset(self, limiter):
        limiter.is_allowed("k", limit=1, window=60)
        limiter.reset()
        assert limiter.is_allowed("k", limit=1, window=60)[0] is True

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            RateLimit("burst")


class TestTokens:
    def test_round_trip(self, test_settings):
        token = create_access_token("user-123", test_settings)
        assert decode_access_token(token, test_settings) == "user-123"

    def test_expired_token(self, test_settings):
        token = create_access_token("user-123", test_settings, expires_delta=timedelta(seconds=-5))
        with pytest.raises(AuthenticationError, match="expired"):
            decode_access_token(token, test_settings)

    def test_wrong_secret(self, test_settings):
        other = test_settings.model_copy(update={"jwt_secret": "another-secret-entirely-0123456789abcdef"})
        token = create_access_token("user-123", other)
        with pytest.raises(AuthenticationError):
            decode_access_token(token, test_settings)

    def test_garbage_token(self, test_settings):
        with pytest.raises(AuthenticationError):
            decode_access_token("not-a-jwt", test_settings)
