"""Tests for the per-client live fetch rate limiter.

WHAT:
    Sliding window behavior against a mocked Redis client.

REFERENCES:
    - adreport/services/rate_limiter.py
"""

from unittest.mock import Mock, patch

import pytest

from adreport.exceptions import ClientRateLimitError
from adreport.services.rate_limiter import (
    RATE_LIMITS,
    WINDOW_SIZE_SECONDS,
    ClientRateLimiter,
)


@pytest.fixture
def redis_client():
    client = Mock()
    client.zcard.return_value = 0
    client.zrange.return_value = []
    return client


class TestWithoutRedis:
    def test_everything_is_allowed(self):
        limiter = ClientRateLimiter(None)

        assert limiter.can_make_call("client-1", "meta") is True
        assert limiter.get_retry_after("client-1", "meta") == 0
        limiter.check_and_record("client-1", "meta")


class TestSlidingWindow:
    @patch("adreport.services.rate_limiter.time.time", return_value=1000.0)
    def test_call_under_limit_is_recorded(self, mock_time, redis_client):
        limiter = ClientRateLimiter(redis_client)

        limiter.check_and_record("client-1", "meta")

        key = "live_fetch_rate:client-1:meta"
        redis_client.zremrangebyscore.assert_called_once_with(key, "-inf", 1000.0 - WINDOW_SIZE_SECONDS)
        redis_client.zadd.assert_called_once_with(key, {"1000.0": 1000.0})
        redis_client.expire.assert_called_once_with(key, WINDOW_SIZE_SECONDS * 2)

    @patch("adreport.services.rate_limiter.time.time", return_value=1000.0)
    def test_limit_reached_raises_with_retry_after(self, mock_time, redis_client):
        """WHAT: At the limit the call is refused and nothing is recorded.
        WHY: The retry hint tells the dashboard when to try again.
        """
        redis_client.zcard.return_value = RATE_LIMITS["google"]
        redis_client.zrange.return_value = [("970.0", 970.0)]
        limiter = ClientRateLimiter(redis_client)

        with pytest.raises(ClientRateLimitError) as exc_info:
            limiter.check_and_record("client-1", "google")

        assert exc_info.value.retry_after == 30
        assert exc_info.value.client_id == "client-1"
        assert exc_info.value.platform == "google"
        redis_client.zadd.assert_not_called()

    def test_limits_are_per_platform(self, redis_client):
        redis_client.zcard.return_value = 20
        limiter = ClientRateLimiter(redis_client)

        assert limiter.can_make_call("client-1", "meta") is True
        assert limiter.can_make_call("client-1", "google") is False

    def test_custom_limits(self, redis_client):
        redis_client.zcard.return_value = 1
        limiter = ClientRateLimiter(redis_client, limits={"meta": 1})

        assert limiter.can_make_call("client-1", "meta") is False

    @patch("adreport.services.rate_limiter.time.time", return_value=1059.5)
    def test_retry_after_is_at_least_one_second(self, mock_time, redis_client):
        redis_client.zrange.return_value = [("1000.0", 1000.0)]
        limiter = ClientRateLimiter(redis_client)

        assert limiter.get_retry_after("client-1", "meta") == 1
