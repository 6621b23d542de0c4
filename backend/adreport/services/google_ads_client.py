"""Google Ads client service abstraction.

WHAT:
    Encapsulates Google Ads API usage behind a small, testable service layer.
    Provides GAQL search with retries and rate limiting, and campaign-level
    insights with a conversion-action breakdown shaped like Meta's
    actions/action_values lists.

WHY:
    - Separation of concerns: keep SDK details out of the resolution engine.
    - Testability: the SDK client is injectable, tests pass a fake service.
    - Same raw shape as Meta so the normalizer handles both platforms alike.

REFERENCES:
    adreport/services/platform_adapters.py (GooglePlatformAdapter)
    adreport/services/action_maps.py (GOOGLE_ACTION_MAP matches conversion names)
"""

from __future__ import annotations

import logging
import os
import re
import time
import random
from datetime import date
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional, Tuple

from google.ads.googleads.client import GoogleAdsClient as _SdkClient

logger = logging.getLogger(__name__)

# Retry policy for transient gRPC failures
MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0
MAX_DELAY_SECONDS = 30.0

# Used when Google signals quota exhaustion without a "Retry in N seconds" hint
DEFAULT_QUOTA_COOLDOWN_SECONDS = 600

_QUOTA_MARKERS = ("RESOURCE_EXHAUSTED", "429", "Too many requests")
_TRANSIENT_MARKERS = ("UNAVAILABLE", "INTERNAL", "RST_STREAM", "deadline exceeded")
_RETRY_HINT = re.compile(r"[Rr]etry in (\d+) seconds")

_REQUIRED_ENV = {
    "developer_token": "GOOGLE_DEVELOPER_TOKEN",
    "client_id": "GOOGLE_CLIENT_ID",
    "client_secret": "GOOGLE_CLIENT_SECRET",
    "refresh_token": "GOOGLE_REFRESH_TOKEN",
}


# =============================================================================
# EXCEPTIONS
# =============================================================================

class QuotaExhaustedError(Exception):
    """Google refused the call for quota reasons.

    Not retried here: the adapter turns it into a rate-limited upstream
    error and `retry_seconds` travels with it.
    """

    def __init__(self, message: str, retry_seconds: int = DEFAULT_QUOTA_COOLDOWN_SECONDS):
        super().__init__(message)
        self.retry_seconds = retry_seconds


# =============================================================================
# THROTTLING + RETRIES
# =============================================================================

class GoogleAdsRateLimiter:
    """Token bucket in front of every GAQL request.

    `capacity` requests may burst; afterwards calls are spaced at
    `refill_per_sec`. Blocks the calling (worker) thread.
    """

    def __init__(self, capacity: int = 15, refill_per_sec: float = 5.0) -> None:
        self.capacity = capacity
        self.refill_per_sec = refill_per_sec
        self.tokens = float(capacity)
        self.updated_at = time.monotonic()

    def acquire(self) -> None:
        now = time.monotonic()
        self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.refill_per_sec)
        self.updated_at = now

        if self.tokens < 1:
            wait = (1 - self.tokens) / self.refill_per_sec
            time.sleep(wait)
            self.updated_at = time.monotonic()
            self.tokens = 1.0

        self.tokens -= 1


def _classify_error(error: Exception) -> Tuple[str, Optional[float]]:
    """Return ("quota" | "transient" | "fatal", seconds hint or None)."""
    text = str(error)

    if any(marker in text for marker in _QUOTA_MARKERS) or "quota" in text.lower():
        match = _RETRY_HINT.search(text)
        return "quota", float(match.group(1)) if match else None

    # GoogleAdsException carries the gRPC status on .error.code()
    status = getattr(getattr(error, "error", None), "code", None)
    if callable(status):
        text = str(getattr(status(), "name", status()))

    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return "transient", getattr(error, "retry_after", None)
    return "fatal", None


def _with_retries(func):
    """Retry transient failures with jittered exponential backoff.

    Quota errors are raised immediately as QuotaExhaustedError; retrying
    them only burns more quota. The live fetch budget in the orchestrator
    still bounds the total time spent here.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        attempt = 1
        while True:
            try:
                return func(self, *args, **kwargs)
            except Exception as e:  # noqa: BLE001
                kind, hint = _classify_error(e)

                if kind == "quota":
                    retry_seconds = int(hint) if hint else DEFAULT_QUOTA_COOLDOWN_SECONDS
                    logger.warning("[GOOGLE_ADS] Quota exhausted, cooldown %ss", retry_seconds)
                    raise QuotaExhaustedError(
                        f"Google Ads quota exhausted: {str(e)[:200]}",
                        retry_seconds=retry_seconds,
                    ) from e

                if kind == "fatal" or attempt >= MAX_ATTEMPTS:
                    raise

                backoff = BASE_DELAY_SECONDS * 2 ** (attempt - 1) * (1 + random.random())
                delay = min(float(hint) if hint else backoff, MAX_DELAY_SECONDS)
                logger.info(
                    "[GOOGLE_ADS] Transient error on attempt %d/%d, retrying in %.1fs: %s",
                    attempt, MAX_ATTEMPTS, delay, str(e)[:100],
                )
                time.sleep(delay)
                attempt += 1

    return wrapper


def _enum_name(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "name", None) or str(value)


def _digits(value: Any) -> str:
    return "".join(ch for ch in str(value) if ch.isdigit())


class GAdsClient:
    """Testable wrapper around Google Ads Python SDK.

    WHAT:
        - Builds an SDK client from environment configuration.
        - Provides GAQL search and campaign insights for a date range.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        rate_limiter: Optional[GoogleAdsRateLimiter] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._client = client or self._build_client_from_env()
        # Per-RPC deadline in seconds; None keeps the SDK default
        self.timeout = timeout
        self._ga_service = None
        self._rate = rate_limiter or GoogleAdsRateLimiter()

    # --- Client factory -------------------------------------------------
    @staticmethod
    def _build_client_from_env() -> Any:
        """SDK client from GOOGLE_* environment variables.

        GOOGLE_LOGIN_CUSTOMER_ID (manager account) is optional and ignored
        unless it has exactly 10 digits once dashes are stripped.

        Raises:
            ValueError: A required variable is missing
        """
        config: Dict[str, Any] = {key: os.getenv(env) for key, env in _REQUIRED_ENV.items()}
        missing = [env for key, env in _REQUIRED_ENV.items() if not config[key]]
        if missing:
            raise ValueError(f"Missing required Google Ads env vars: {', '.join(missing)}")

        login_customer_id = _digits(os.getenv("GOOGLE_LOGIN_CUSTOMER_ID") or "")
        if len(login_customer_id) == 10:
            config["login_customer_id"] = login_customer_id

        config["use_proto_plus"] = True
        return _SdkClient.load_from_dict(config)

    # --- Low-level GAQL -------------------------------------------------
    def _service(self):
        if self._ga_service is None:
            self._ga_service = self._client.get_service("GoogleAdsService")
        return self._ga_service

    @_with_retries
    def search(self, customer_id: str, query: str) -> Iterable[Any]:
        """GAQL search with rate limit + retries."""
        self._rate.acquire()
        # Materialize so pagination errors surface inside the retry wrapper
        kwargs = {"timeout": self.timeout} if self.timeout is not None else {}
        return list(self._service().search(customer_id=customer_id, query=query, **kwargs))

    # --- Insights -------------------------------------------------------
    @staticmethod
    def campaign_metrics_query(start: date, end: date) -> str:
        return (
            "SELECT campaign.id, campaign.name, campaign.status, "
            "metrics.cost_micros, metrics.impressions, metrics.clicks, "
            "metrics.conversions, metrics.conversions_value, "
            "metrics.ctr, metrics.average_cpc "
            "FROM campaign "
            f"WHERE segments.date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'"
        )

    @staticmethod
    def conversion_actions_query(start: date, end: date) -> str:
        return (
            "SELECT campaign.id, segments.conversion_action_name, "
            "metrics.conversions, metrics.conversions_value "
            "FROM campaign "
            f"WHERE segments.date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}' "
            "AND metrics.conversions > 0"
        )

    def fetch_campaign_insights(self, customer_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        """Campaign totals for [start, end] plus a per-conversion-action breakdown.

        Returns one dict per campaign:
            campaign_id, campaign_name, status, spend (from cost_micros),
            impressions, clicks, conversions, conversions_value,
            actions/action_values: [{"action_type": <conversion action name>, "value": ...}]

        NOTE: ctr and average_cpc are passed through for audits only.
        """
        customer_id = _digits(customer_id)
        logger.info("[GOOGLE_ADS] Fetching campaign insights: %s, %s to %s", customer_id, start, end)

        campaigns: Dict[str, Dict[str, Any]] = {}
        for r in self.search(customer_id, self.campaign_metrics_query(start, end)):
            m = r.metrics
            campaign_id = str(getattr(r.campaign, "id", ""))
            campaigns[campaign_id] = {
                "campaign_id": campaign_id,
                "campaign_name": getattr(r.campaign, "name", "") or "",
                "status": _enum_name(getattr(r.campaign, "status", None)),
                # Normalize spend from micros to standard units
                "spend": (getattr(m, "cost_micros", 0) or 0) / 1_000_000.0,
                "impressions": int(getattr(m, "impressions", 0) or 0),
                "clicks": int(getattr(m, "clicks", 0) or 0),
                "conversions": float(getattr(m, "conversions", 0.0) or 0.0),
                "conversions_value": float(getattr(m, "conversions_value", 0.0) or 0.0),
                "ctr": getattr(m, "ctr", None),
                "average_cpc": getattr(m, "average_cpc", None),
                "actions": [],
                "action_values": [],
            }

        for r in self.search(customer_id, self.conversion_actions_query(start, end)):
            campaign_id = str(getattr(r.campaign, "id", ""))
            campaign = campaigns.get(campaign_id)
            if campaign is None:
                continue
            name = getattr(r.segments, "conversion_action_name", "") or ""
            campaign["actions"].append({
                "action_type": name,
                "value": float(getattr(r.metrics, "conversions", 0.0) or 0.0),
            })
            campaign["action_values"].append({
                "action_type": name,
                "value": float(getattr(r.metrics, "conversions_value", 0.0) or 0.0),
            })

        logger.info("[GOOGLE_ADS] Fetched %d campaigns for %s", len(campaigns), customer_id)
        return list(campaigns.values())
