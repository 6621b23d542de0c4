"""Tests for the Meta and Google platform adapters.

WHAT:
    SDK client failures become UpstreamError subclasses with the platform's
    message preserved. Successful rows pass through untouched.

REFERENCES:
    - adreport/services/platform_adapters.py
"""

import asyncio
import types
from datetime import date
from unittest.mock import Mock

import pytest
from google.ads.googleads.errors import GoogleAdsException

from adreport.exceptions import (
    PlatformPermissionError,
    QuotaExhaustedError,
    TokenExpiredError,
    UpstreamError,
)
from adreport.schemas import DateRange
from adreport.services.google_ads_client import QuotaExhaustedError as GoogleQuotaError
from adreport.services.meta_ads_client import (
    MetaAdsAuthenticationError,
    MetaAdsClientError,
    MetaAdsPermissionError,
    MetaAdsRateLimitError,
)
from adreport.services.platform_adapters import GooglePlatformAdapter, MetaPlatformAdapter

RANGE = DateRange(start=date(2025, 9, 1), end=date(2025, 9, 30))


def _google_exception(code_name, message):
    error = types.SimpleNamespace(code=lambda: types.SimpleNamespace(name=code_name))
    failure = types.SimpleNamespace(errors=[types.SimpleNamespace(message=message)])
    return GoogleAdsException(error, None, failure, "request-1")


class TestMetaAdapter:
    def test_rows_pass_through_with_iso_dates(self):
        client = Mock()
        client.get_campaign_insights.return_value = [{"campaign_id": "1"}]
        adapter = MetaPlatformAdapter(client=client)

        rows = asyncio.run(adapter.fetch_insights("act_111", RANGE))

        assert rows == [{"campaign_id": "1"}]
        client.get_campaign_insights.assert_called_once_with("act_111", "2025-09-01", "2025-09-30")

    @pytest.mark.parametrize(
        "error,expected,code",
        [
            (MetaAdsAuthenticationError("auth", http_status=401, api_message="Error validating access token"),
             TokenExpiredError, "token_expired"),
            (MetaAdsPermissionError("perm", http_status=403, api_message="Missing ads_read permission"),
             PlatformPermissionError, "permission_denied"),
            (MetaAdsRateLimitError("rate", http_status=400, api_error_code=17, api_message="User request limit reached"),
             QuotaExhaustedError, "rate_limited"),
        ],
    )
    def test_typed_errors_are_mapped(self, error, expected, code):
        client = Mock()
        client.get_campaign_insights.side_effect = error
        adapter = MetaPlatformAdapter(client=client)

        with pytest.raises(expected) as exc_info:
            asyncio.run(adapter.fetch_insights("act_111", RANGE))

        assert exc_info.value.code == code
        assert exc_info.value.message == error.api_message
        assert exc_info.value.platform == "meta"

    def test_other_client_errors_keep_meta_code(self):
        client = Mock()
        client.get_campaign_insights.side_effect = MetaAdsClientError(
            "server", http_status=500, api_error_code=2, api_message="Service temporarily unavailable"
        )
        adapter = MetaPlatformAdapter(client=client)

        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(adapter.fetch_insights("act_111", RANGE))

        assert exc_info.value.code == "2"
        assert exc_info.value.message == "Service temporarily unavailable"

    def test_missing_token_is_token_error(self):
        """WHAT: Without a client or factory the adapter reports an auth problem."""
        adapter = MetaPlatformAdapter()

        with pytest.raises(TokenExpiredError):
            asyncio.run(adapter.fetch_insights("act_111", RANGE))

    def test_client_is_built_lazily_once(self):
        client = Mock()
        client.get_campaign_insights.return_value = []
        factory = Mock(return_value=client)
        adapter = MetaPlatformAdapter(client_factory=factory)

        factory.assert_not_called()
        asyncio.run(adapter.fetch_insights("act_111", RANGE))
        asyncio.run(adapter.fetch_insights("act_111", RANGE))

        factory.assert_called_once_with()


class TestGoogleAdapter:
    def test_rows_pass_through_with_dates(self):
        client = Mock()
        client.fetch_campaign_insights.return_value = [{"campaign_id": "9"}]
        adapter = GooglePlatformAdapter(client=client)

        rows = asyncio.run(adapter.fetch_insights("1234567890", RANGE))

        assert rows == [{"campaign_id": "9"}]
        client.fetch_campaign_insights.assert_called_once_with("1234567890", RANGE.start, RANGE.end)

    def test_quota_error_keeps_retry_hint(self):
        client = Mock()
        client.fetch_campaign_insights.side_effect = GoogleQuotaError("quota exhausted", retry_seconds=120)
        adapter = GooglePlatformAdapter(client=client)

        with pytest.raises(QuotaExhaustedError) as exc_info:
            asyncio.run(adapter.fetch_insights("1234567890", RANGE))

        assert exc_info.value.retry_after == 120
        assert exc_info.value.code == "rate_limited"

    @pytest.mark.parametrize(
        "code_name,expected",
        [
            ("UNAUTHENTICATED", TokenExpiredError),
            ("PERMISSION_DENIED", PlatformPermissionError),
        ],
    )
    def test_auth_errors_are_mapped(self, code_name, expected):
        client = Mock()
        client.fetch_campaign_insights.side_effect = _google_exception(code_name, "The caller does not have permission")
        adapter = GooglePlatformAdapter(client=client)

        with pytest.raises(expected) as exc_info:
            asyncio.run(adapter.fetch_insights("1234567890", RANGE))

        assert exc_info.value.message == "The caller does not have permission"

    def test_other_google_errors_keep_code_and_message(self):
        client = Mock()
        client.fetch_campaign_insights.side_effect = _google_exception("INVALID_ARGUMENT", "Invalid customer ID '123'.")
        adapter = GooglePlatformAdapter(client=client)

        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(adapter.fetch_insights("123", RANGE))

        assert exc_info.value.code == "INVALID_ARGUMENT"
        assert exc_info.value.message == "Invalid customer ID '123'."
        assert exc_info.value.platform == "google"

    def test_missing_credentials_are_configuration_errors(self):
        factory = Mock(side_effect=ValueError("Missing required Google Ads env vars: developer_token"))
        adapter = GooglePlatformAdapter(client_factory=factory)

        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(adapter.fetch_insights("1234567890", RANGE))

        assert exc_info.value.code == "configuration"
