"""
Resolution Exceptions
=====================

Custom exception types for the data-freshness resolution engine.

WHY THIS FILE EXISTS
--------------------
Resolving report data has failure modes that callers must tell apart:
- A malformed request (rejected before any I/O, never retried)
- A live fetch that exceeded its time budget
- An explicit error returned by Meta or Google (auth, quota, invalid account)
- A client without an ad account for the requested platform
- Our own per-client rate limit

"No historical data" is deliberately NOT an exception: it is a successful,
flagged empty result. Source inconsistencies are logged, never raised.

RELATED FILES
-------------
- adreport/services/live_fetch.py: Raises LiveFetchTimeoutError, ClientRateLimitError
- adreport/services/platform_adapters.py: Translates SDK errors into UpstreamError
- adreport/services/resolution_engine.py: Catches these and builds success=False results
- adreport/routers/reports.py: Maps FetchValidationError to HTTP 422
"""

from typing import Optional


class ResolutionError(Exception):
    """
    Base exception for all resolution errors.

    WHAT:
        Parent class for every error the engine surfaces.

    WHY:
        Allows catching all expected failures with a single except clause
        while unexpected bugs still propagate.
    """

    def __init__(self, message: str, platform: Optional[str] = None):
        """
        PARAMETERS:
            message: Human-readable error description
            platform: The ad platform (meta, google) if applicable
        """
        super().__init__(message)
        self.platform = platform
        self.message = message

    def to_user_message(self) -> str:
        """String suitable for display to end users."""
        return self.message


class FetchValidationError(ResolutionError):
    """
    Malformed request: start after end, unknown platform, future start date.

    Raised before any cache, database or platform call is made.
    """


class LiveFetchTimeoutError(ResolutionError):
    """
    Live platform fetch exceeded its wall-clock budget.

    WHAT:
        Distinct from UpstreamError: the platform never answered.

    RECOVERY:
        Caller may retry with backoff. The cache was not touched.
    """

    def __init__(
        self,
        platform: str,
        timeout_seconds: float = 30,
        message: Optional[str] = None,
    ):
        self.timeout_seconds = timeout_seconds

        if message is None:
            message = f"{platform.title()} Ads API call timed out after {timeout_seconds:g} seconds."

        super().__init__(message, platform)

    def to_user_message(self) -> str:
        return (
            f"The {self.platform.title()} Ads API is responding slowly. "
            f"Please try again in a moment."
        )


class UpstreamError(ResolutionError):
    """
    The ad platform returned an explicit error.

    ATTRIBUTES:
        code: Platform error code or a short slug ("rate_limited", "401")
        message: Upstream message, kept verbatim for debug.reason
    """

    def __init__(self, code: str, message: str, platform: Optional[str] = None):
        self.code = str(code)
        super().__init__(message, platform)


class QuotaExhaustedError(UpstreamError):
    """
    Platform API quota exceeded.

    ATTRIBUTES:
        retry_after: Seconds until quota resets (if known)
    """

    def __init__(
        self,
        platform: str,
        retry_after: Optional[int] = None,
        message: Optional[str] = None,
    ):
        self.retry_after = retry_after

        if message is None:
            if retry_after:
                message = f"{platform.title()} Ads API quota exceeded. Resets in {retry_after} seconds."
            else:
                message = f"{platform.title()} Ads API quota exceeded."

        super().__init__("rate_limited", message, platform)

    def to_user_message(self) -> str:
        if self.retry_after and self.retry_after < 300:  # Less than 5 minutes
            return f"The {self.platform.title()} Ads API is temporarily unavailable. Please try again in a few minutes."
        return f"The {self.platform.title()} Ads API is at its limit. Please try again later."


class TokenExpiredError(UpstreamError):
    """OAuth or system user token rejected by the platform (HTTP 401)."""

    def __init__(self, platform: str, message: Optional[str] = None):
        if message is None:
            message = f"Your {platform.title()} Ads connection needs to be re-authorized."
        super().__init__("token_expired", message, platform)

    def to_user_message(self) -> str:
        return (
            f"The {self.platform.title()} Ads connection has expired. "
            f"Please reconnect the account."
        )


class PlatformPermissionError(UpstreamError):
    """Token is valid but lacks access to the requested account (HTTP 403)."""

    def __init__(self, platform: str, message: Optional[str] = None):
        if message is None:
            message = f"Insufficient permissions for {platform.title()} Ads API."
        super().__init__("permission_denied", message, platform)

    def to_user_message(self) -> str:
        return (
            f"The {self.platform.title()} Ads account doesn't grant access to this data. "
            f"Please check the account permissions."
        )


class ProviderNotConnectedError(ResolutionError):
    """
    No ad account for the requested platform on this client.

    RECOVERY:
        Link the platform account to the client.
    """

    def __init__(self, platform: str, client_id: Optional[str] = None, message: Optional[str] = None):
        self.client_id = client_id
        if message is None:
            message = f"No {platform.title()} Ads account connected to client {client_id}."
        super().__init__(message, platform)

    def to_user_message(self) -> str:
        return f"This client has no {self.platform.title()} Ads account connected yet."


class ClientRateLimitError(ResolutionError):
    """
    Per-client live fetch limit hit (our limit, not the platform quota).

    ATTRIBUTES:
        retry_after: Seconds until a slot frees up
        client_id: The rate-limited client
    """

    def __init__(
        self,
        retry_after: int,
        client_id: Optional[str] = None,
        platform: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.retry_after = retry_after
        self.client_id = client_id

        if message is None:
            message = f"Rate limit exceeded. Please wait {retry_after} seconds before trying again."

        super().__init__(message, platform)

    def to_user_message(self) -> str:
        if self.retry_after <= 10:
            return "Processing too many requests. Please wait a moment and try again."
        return f"Too many live refreshes for this client. Please wait {self.retry_after} seconds."
