"""
Client Rate Limiter
===================

Per-client sliding window rate limiting for live platform fetches.

WHY THIS FILE EXISTS
--------------------
Live fetches consume the agency-wide Meta and Google quotas. Without a
per-client limit, one client's dashboard refresh loop (or a stuck
scheduled job) could exhaust quota for every other client.

RATE LIMITS
-----------
- Google Ads: 15 live fetches per minute per client
- Meta Ads: 30 live fetches per minute per client

These sit well below the real API quotas to leave headroom for backfills.
Deduplicated fetches (many waiters on one in-flight request) count once.

RELATED FILES
-------------
- adreport/services/live_fetch.py: Checks this limiter before every upstream call
- adreport/exceptions.py: ClientRateLimitError
- adreport/state.py: Shared Redis client
"""

import logging
import time
from typing import Optional, Dict

from redis import Redis

from adreport.exceptions import ClientRateLimitError

logger = logging.getLogger(__name__)

# Rate limits per platform (calls per minute per client)
RATE_LIMITS: Dict[str, int] = {
    "google": 15,
    "meta": 30,
}

# Window size in seconds (1 minute sliding window)
WINDOW_SIZE_SECONDS = 60


class ClientRateLimiter:
    """
    Redis-backed sliding window rate limiter for live fetches.

    HOW:
        Uses Redis sorted sets with timestamps as scores.
        - Key format: "live_fetch_rate:{client_id}:{platform}"
        - Each call adds a timestamp to the sorted set
        - Old entries (outside window) are removed on each check
        - Count of entries in window determines if limit exceeded

    USAGE:
        limiter = ClientRateLimiter(redis_client)
        limiter.check_and_record("client-1", "meta")  # raises ClientRateLimitError

    WITHOUT REDIS:
        Rate limiting is disabled (development and tests).
    """

    def __init__(self, redis_client: Optional[Redis], limits: Optional[Dict[str, int]] = None):
        self.redis = redis_client
        self.limits = dict(limits or RATE_LIMITS)

        if not self.redis:
            logger.warning("[RATE_LIMITER] No Redis client - live fetch rate limiting disabled")

    def _get_key(self, client_id: str, platform: str) -> str:
        return f"live_fetch_rate:{client_id}:{platform}"

    def _cleanup_window(self, key: str) -> None:
        """Remove timestamps older than WINDOW_SIZE_SECONDS."""
        cutoff = time.time() - WINDOW_SIZE_SECONDS
        self.redis.zremrangebyscore(key, "-inf", cutoff)

    def can_make_call(self, client_id: str, platform: str) -> bool:
        """Check whether the client is under its limit for this platform."""
        if not self.redis:
            return True

        limit = self.limits.get(platform, 15)
        key = self._get_key(client_id, platform)

        self._cleanup_window(key)
        current_count = self.redis.zcard(key)

        allowed = current_count < limit
        if not allowed:
            logger.warning(
                f"[RATE_LIMITER] Client {client_id} hit {platform} rate limit "
                f"({current_count}/{limit} calls/min)"
            )
        return allowed

    def record_call(self, client_id: str, platform: str) -> None:
        """Add the current timestamp to the client's window."""
        if not self.redis:
            return

        key = self._get_key(client_id, platform)
        now = time.time()

        # Score = timestamp, Member = timestamp string (unique at microsecond resolution)
        self.redis.zadd(key, {f"{now}": now})
        # TTL = 2x window so idle keys disappear
        self.redis.expire(key, WINDOW_SIZE_SECONDS * 2)

        logger.debug(f"[RATE_LIMITER] Recorded {platform} fetch for client {client_id}")

    def get_retry_after(self, client_id: str, platform: str) -> int:
        """Seconds until the oldest call in the window expires (at least 1)."""
        if not self.redis:
            return 0

        oldest = self.redis.zrange(self._get_key(client_id, platform), 0, 0, withscores=True)
        if not oldest:
            return 0

        expires_at = oldest[0][1] + WINDOW_SIZE_SECONDS
        return max(1, int(expires_at - time.time()))

    def check_and_record(self, client_id: str, platform: str) -> None:
        """
        Check the limit and record the call in one step.

        RAISES:
            ClientRateLimitError: If the client is over its limit
        """
        if not self.can_make_call(client_id, platform):
            raise ClientRateLimitError(
                retry_after=self.get_retry_after(client_id, platform),
                client_id=client_id,
                platform=platform,
            )

        self.record_call(client_id, platform)
