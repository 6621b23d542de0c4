"""Meta Ads API Client Service.

WHAT:
    Wrapper for Facebook Business SDK providing rate-limited access to the
    Meta Marketing API insights endpoint at campaign level.

WHY:
    - One call per ad account and date range (level=campaign, all_days)
    - Rate limiting enforcement (200 calls/hour per access token)
    - Typed errors so the platform adapter can tell throttling, expired
      tokens and bad requests apart without parsing messages

WHERE USED:
    - adreport/services/platform_adapters.py (MetaPlatformAdapter)

DEPENDENCIES:
    - facebook_business SDK
    - adreport/deps.py (META_ACCESS_TOKEN, META_APP_ID, META_APP_SECRET)

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
"""

import logging
import threading
from functools import wraps
from time import time
from collections import deque
from typing import List, Dict, Any, Optional, Deque

from facebook_business.api import FacebookAdsApi
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.adsinsights import AdsInsights
from facebook_business.exceptions import FacebookRequestError

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 3600

# Call timestamps per access token, shared by every decorated method.
# Adapter calls run in worker threads; hold the lock while reading or writing.
_rate_limit_call_times: Dict[str, Deque[float]] = {}
_rate_limit_lock = threading.Lock()

# Graph API codes for app, user and ad-account throttling (often sent with HTTP 400)
_THROTTLE_ERROR_CODES = {4, 17, 32, 613, 80000, 80004}

# Graph API code for an expired or revoked access token
_INVALID_TOKEN_CODE = 190


def _budget_key(args) -> str:
    owner = args[0] if args else None
    return str(getattr(owner, "access_token", None) or "default")


def rate_limit(calls_per_hour: int):
    """Sliding one-hour window per access token.

    A full window raises MetaAdsRateLimitError with the seconds until the
    oldest call leaves it. The worker thread never sleeps here.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            with _rate_limit_lock:
                window = _rate_limit_call_times.setdefault(_budget_key(args), deque())
                now = time()

                while window and window[0] < now - WINDOW_SECONDS:
                    window.popleft()

                if len(window) >= calls_per_hour:
                    wait = WINDOW_SECONDS - (now - window[0]) + 1
                    logger.warning(
                        f"[META_CLIENT] {calls_per_hour} calls/hour used for this token, "
                        f"next slot in {wait:.0f}s"
                    )
                    raise MetaAdsRateLimitError(
                        f"Local Meta budget of {calls_per_hour} calls/hour reached; retry in {wait:.0f}s",
                        http_status=429,
                    )

                window.append(now)
            return func(*args, **kwargs)
        return wrapper
    return decorator


class MetaAdsClientError(Exception):
    """Any Graph API failure.

    Attributes:
        http_status: HTTP status of the Graph API response, if any
        api_error_code: Graph API error code, if any
        api_message: Meta's message exactly as returned; falls back to our own
    """

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        api_error_code: Optional[int] = None,
        api_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.http_status = http_status
        self.api_error_code = api_error_code
        self.api_message = api_message or message


class MetaAdsAuthenticationError(MetaAdsClientError):
    """Token rejected: HTTP 401 or code 190."""


class MetaAdsPermissionError(MetaAdsClientError):
    """Token valid but not allowed to read the ad account (HTTP 403)."""


class MetaAdsValidationError(MetaAdsClientError):
    """Malformed request: bad account id, fields or date range (HTTP 400)."""


class MetaAdsRateLimitError(MetaAdsClientError):
    """Throttled by Meta: HTTP 429 or one of the throttling codes."""


# Campaign-level insight fields. ctr/cpc are requested for audits only;
# the normalizer always recomputes them from clicks and impressions.
CAMPAIGN_INSIGHT_FIELDS = [
    AdsInsights.Field.campaign_id,
    AdsInsights.Field.campaign_name,
    AdsInsights.Field.spend,
    AdsInsights.Field.impressions,
    AdsInsights.Field.clicks,
    AdsInsights.Field.reach,
    AdsInsights.Field.ctr,
    AdsInsights.Field.cpc,
    AdsInsights.Field.actions,
    AdsInsights.Field.action_values,
    AdsInsights.Field.date_start,
    AdsInsights.Field.date_stop,
]


class MetaAdsClient:
    """Client for the Meta Marketing API insights endpoint.

    Usage:
        ```python
        client = MetaAdsClient(access_token="YOUR_TOKEN")
        rows = client.get_campaign_insights("act_123456789", "2025-09-01", "2025-09-30")
        ```
    """

    def __init__(
        self,
        access_token: str,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Configure the process-wide FacebookAdsApi session.

        System user tokens work without app_id/app_secret; pass them to get
        appsecret_proof on every request. `timeout` (seconds) bounds every
        HTTP request the SDK makes; None leaves requests unbounded.
        """
        self.access_token = access_token
        self.timeout = timeout

        FacebookAdsApi.init(
            app_id=app_id,
            app_secret=app_secret,
            access_token=access_token,
            timeout=timeout,
        )

        logger.info("[META_CLIENT] Graph API session ready")

    @rate_limit(calls_per_hour=200)
    def get_campaign_insights(
        self,
        ad_account_id: str,
        start_date: str,
        end_date: str,
        fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch one aggregated insight row per campaign for a date range.

        WHAT:
            Single account-level call with level=campaign and
            time_increment=all_days, paginated by the SDK cursor.

        WHY:
            One call per account instead of one per campaign keeps well
            within the hourly budget.

        Args:
            ad_account_id: Meta ad account ID (format: "act_123456789")
            start_date: Start date in YYYY-MM-DD format
            end_date: End date in YYYY-MM-DD format (inclusive)
            fields: Override the default campaign insight fields

        Returns:
            List of insight dictionaries with campaign_id, campaign_name,
            spend, impressions, clicks, reach, actions, action_values

        Raises:
            MetaAdsAuthenticationError: Invalid or expired token
            MetaAdsPermissionError: Insufficient permissions for account
            MetaAdsValidationError: Invalid account ID or date range
            MetaAdsRateLimitError: Throttled by Meta
            MetaAdsClientError: Other API errors
        """
        if not ad_account_id.startswith("act_"):
            ad_account_id = f"act_{ad_account_id}"

        try:
            logger.info(
                f"[META_CLIENT] Fetching campaign insights: {ad_account_id}, "
                f"{start_date} to {end_date}"
            )

            account = AdAccount(ad_account_id)
            params = {
                'level': 'campaign',
                'time_increment': 'all_days',
                'time_range': {
                    'since': start_date,
                    'until': end_date,
                },
            }
            insights = account.get_insights(fields=list(fields or CAMPAIGN_INSIGHT_FIELDS), params=params)

            result = [dict(insight) for insight in insights]

            logger.info(f"[META_CLIENT] Fetched {len(result)} campaign insight rows")
            return result

        except FacebookRequestError as e:
            return self._handle_api_error(e, f"fetching campaign insights for {ad_account_id}")

    def _handle_api_error(self, error: FacebookRequestError, context: str) -> None:
        """Raise the typed error for a Graph API failure. Never returns.

        Order matters: code 190 is an auth failure even when Meta sends it
        with HTTP 400, and throttling codes win over the generic 400 branch.
        """
        error_code = error.api_error_code()
        error_message = error.api_error_message()
        http_status = error.http_status()

        logger.error(
            f"[META_CLIENT] API error while {context}: "
            f"HTTP {http_status}, Code {error_code}, Message: {error_message}"
        )

        details = dict(http_status=http_status, api_error_code=error_code, api_message=error_message)

        if http_status == 401 or error_code == _INVALID_TOKEN_CODE:
            raise MetaAdsAuthenticationError(
                f"Authentication failed while {context}. Token may be expired or invalid.",
                **details,
            )
        elif http_status == 403:
            raise MetaAdsPermissionError(
                f"Permission denied while {context}. Check token permissions.",
                **details,
            )
        elif http_status == 429 or error_code in _THROTTLE_ERROR_CODES:
            raise MetaAdsRateLimitError(
                f"Rate limit exceeded while {context}: {error_message}",
                **details,
            )
        elif http_status == 400:
            raise MetaAdsValidationError(
                f"Invalid request while {context}: {error_message}",
                **details,
            )
        else:
            # 500, 503, or other server errors
            raise MetaAdsClientError(
                f"API error while {context}: HTTP {http_status}, {error_message}",
                **details,
            )
