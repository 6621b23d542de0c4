"""Platform adapters: one capability interface over the Meta and Google SDKs.

WHAT:
    PlatformAdapter exposes `fetch_insights(account_id, date_range)` and the
    platform's `action_type_map`. MetaPlatformAdapter and
    GooglePlatformAdapter wrap the blocking SDK clients in worker threads
    and translate SDK failures into UpstreamError subclasses.

WHY:
    The orchestrator and normalizer treat both platforms polymorphically.
    There is no per-platform branching anywhere above this module.

ERROR MAPPING:
    - 401 / expired token      -> TokenExpiredError
    - 403                      -> PlatformPermissionError
    - throttling / quota       -> QuotaExhaustedError (code "rate_limited")
    - anything else from SDK   -> UpstreamError(code, message) with the
                                  platform's message kept verbatim

REFERENCES:
    - adreport/services/meta_ads_client.py
    - adreport/services/google_ads_client.py
    - adreport/services/live_fetch.py (consumer; applies the time budget)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from google.ads.googleads.errors import GoogleAdsException

from adreport.exceptions import (
    PlatformPermissionError,
    QuotaExhaustedError,
    TokenExpiredError,
    UpstreamError,
)
from adreport.models import PlatformEnum
from adreport.schemas import CampaignMetrics, DateRange
from adreport.services.action_maps import GOOGLE_ACTION_MAP, META_ACTION_MAP, ActionTypeMap
from adreport.services.google_ads_client import GAdsClient, QuotaExhaustedError as GoogleQuotaError
from adreport.services.meta_ads_client import (
    MetaAdsAuthenticationError,
    MetaAdsClient,
    MetaAdsClientError,
    MetaAdsPermissionError,
    MetaAdsRateLimitError,
)
from adreport.services.metric_normalizer import normalize

logger = logging.getLogger(__name__)

RawCampaign = Dict[str, Any]


class PlatformAdapter(ABC):
    """Capability interface for one ad platform."""

    platform: PlatformEnum
    action_type_map: ActionTypeMap

    @abstractmethod
    async def fetch_insights(self, account_id: str, date_range: DateRange) -> List[RawCampaign]:
        """Return one raw campaign row per campaign for the inclusive range.

        Raises:
            UpstreamError: The platform answered with an error
        """

    def normalize(self, raw_campaign: RawCampaign) -> CampaignMetrics:
        return normalize(raw_campaign, self.platform.value, self.action_type_map)


class MetaPlatformAdapter(PlatformAdapter):
    """Meta Marketing API via MetaAdsClient.

    The client is built lazily: FacebookAdsApi.init() sets process-global
    state, so nothing happens until the first fetch.
    """

    platform = PlatformEnum.meta
    action_type_map = META_ACTION_MAP

    def __init__(
        self,
        client: Optional[MetaAdsClient] = None,
        client_factory: Optional[Callable[[], MetaAdsClient]] = None,
    ) -> None:
        self._client = client
        self._client_factory = client_factory

    def _get_client(self) -> MetaAdsClient:
        if self._client is None:
            if self._client_factory is None:
                raise TokenExpiredError("meta", message="META_ACCESS_TOKEN is not configured.")
            self._client = self._client_factory()
        return self._client

    def _fetch_sync(self, account_id: str, date_range: DateRange) -> List[RawCampaign]:
        try:
            return self._get_client().get_campaign_insights(
                account_id,
                date_range.start.isoformat(),
                date_range.end.isoformat(),
            )
        except MetaAdsAuthenticationError as e:
            raise TokenExpiredError("meta", message=e.api_message) from e
        except MetaAdsPermissionError as e:
            raise PlatformPermissionError("meta", message=e.api_message) from e
        except MetaAdsRateLimitError as e:
            raise QuotaExhaustedError("meta", message=e.api_message) from e
        except MetaAdsClientError as e:
            code = e.api_error_code or e.http_status or "meta_error"
            raise UpstreamError(str(code), e.api_message, platform="meta") from e

    async def fetch_insights(self, account_id: str, date_range: DateRange) -> List[RawCampaign]:
        return await asyncio.to_thread(self._fetch_sync, account_id, date_range)


class GooglePlatformAdapter(PlatformAdapter):
    """Google Ads API via GAdsClient (campaign metrics + conversion actions)."""

    platform = PlatformEnum.google
    action_type_map = GOOGLE_ACTION_MAP

    def __init__(
        self,
        client: Optional[GAdsClient] = None,
        client_factory: Optional[Callable[[], GAdsClient]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._client = client
        self._client_factory = client_factory or (lambda: GAdsClient(timeout=timeout))

    def _get_client(self) -> GAdsClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    @staticmethod
    def _describe(error: GoogleAdsException) -> tuple:
        code_fn = getattr(getattr(error, "error", None), "code", None)
        code = getattr(code_fn(), "name", "google_ads_error") if callable(code_fn) else "google_ads_error"
        failure = getattr(error, "failure", None)
        errors = list(getattr(failure, "errors", []) or [])
        message = errors[0].message if errors else str(error)
        return code, message

    def _fetch_sync(self, account_id: str, date_range: DateRange) -> List[RawCampaign]:
        try:
            return self._get_client().fetch_campaign_insights(account_id, date_range.start, date_range.end)
        except GoogleQuotaError as e:
            raise QuotaExhaustedError("google", retry_after=e.retry_seconds, message=str(e)) from e
        except GoogleAdsException as e:
            code, message = self._describe(e)
            if code in ("UNAUTHENTICATED",):
                raise TokenExpiredError("google", message=message) from e
            if code in ("PERMISSION_DENIED",):
                raise PlatformPermissionError("google", message=message) from e
            raise UpstreamError(code, message, platform="google") from e
        except ValueError as e:
            # Missing GOOGLE_* credentials surface from the client factory
            raise UpstreamError("configuration", str(e), platform="google") from e

    async def fetch_insights(self, account_id: str, date_range: DateRange) -> List[RawCampaign]:
        return await asyncio.to_thread(self._fetch_sync, account_id, date_range)
