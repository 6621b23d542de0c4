"""Pydantic schemas for resolution requests, report data and results."""

from datetime import date
from typing import Optional, List, Literal

from pydantic import BaseModel, Field

from .models import PlatformEnum


# Provenance values shared by debug.source and the validation record
DataSource = Literal["cache-fresh", "cache-stale", "live-api", "database"]


class DateRange(BaseModel):
    """Inclusive calendar date range."""

    start: date = Field(description="First day of the range (inclusive)", examples=["2025-09-01"])
    end: date = Field(description="Last day of the range (inclusive)", examples=["2025-09-30"])

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


class FetchRequest(BaseModel):
    """One resolution request for a (client, date range, platform) tuple."""

    client_id: str = Field(description="Opaque client identifier")
    date_range: DateRange
    platform: PlatformEnum = Field(description="Ad platform: meta or google")
    force_fresh: bool = Field(default=False, description="Skip the cache read and go live")
    reason: str = Field(default="", description="Free text for logs only")

    model_config = {
        "json_schema_extra": {
            "example": {
                "client_id": "c2f1a0e4-client",
                "date_range": {"start": "2025-09-01", "end": "2025-09-30"},
                "platform": "meta",
                "force_fresh": False,
                "reason": "dashboard-load",
            }
        }
    }


class ResolveBody(BaseModel):
    """HTTP payload for POST /clients/{client_id}/metrics/resolve."""

    start: date
    end: date
    platform: PlatformEnum
    force_fresh: bool = False
    reason: str = "api"


# --- Report data --------------------------------------------------------------

class FunnelMetrics(BaseModel):
    """Booking funnel extracted from platform action lists."""

    click_to_call: int = 0
    email_contacts: int = 0
    booking_step_1: int = 0  # Search
    booking_step_2: int = 0  # View content
    booking_step_3: int = 0  # Checkout initiated
    reservations: int = 0
    reservation_value: float = 0.0


class CampaignMetrics(BaseModel):
    """Canonical per-campaign metrics, identical in shape for both platforms."""

    campaign_id: str
    campaign_name: str = ""
    status: Optional[str] = None
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    ctr: float = Field(default=0.0, description="clicks / impressions * 100")
    cpc: float = Field(default=0.0, description="spend / clicks")
    conversions: float = 0.0
    reach: int = 0
    funnel: FunnelMetrics = Field(default_factory=FunnelMetrics)


class Stats(BaseModel):
    total_spend: float = 0.0
    total_impressions: int = 0
    total_clicks: int = 0
    total_conversions: float = 0.0
    average_ctr: float = 0.0
    average_cpc: float = 0.0


class ConversionMetrics(BaseModel):
    click_to_call: int = 0
    email_contacts: int = 0
    booking_step_1: int = 0
    booking_step_2: int = 0
    booking_step_3: int = 0
    reservations: int = 0
    reservation_value: float = 0.0
    roas: float = 0.0
    cost_per_reservation: float = 0.0
    reach: int = 0


class ReportData(BaseModel):
    """Campaign list plus the totals derived from it.

    `data_available=False` means nothing has been collected for the period,
    which is different from campaigns that genuinely spent nothing.
    """

    stats: Stats = Field(default_factory=Stats)
    conversion_metrics: ConversionMetrics = Field(default_factory=ConversionMetrics)
    campaigns: List[CampaignMetrics] = Field(default_factory=list)
    data_available: bool = True


# --- Result -------------------------------------------------------------------

class DebugInfo(BaseModel):
    source: Optional[DataSource] = None
    cache_policy: str = Field(description="Which tier rule applied, e.g. 'smart-cache-month'")
    reason: Optional[str] = Field(default=None, description="Failure or empty-data reason, verbatim")
    period_kind: str
    period_id: Optional[str] = None
    response_time_ms: int = 0
    date_range_capped: bool = False
    data_source_priority: List[str] = Field(default_factory=list)
    cache_age_seconds: Optional[int] = None


class ValidationRecord(BaseModel):
    """Expected vs actual provenance. Observability only."""

    expected_source: DataSource
    actual_source: Optional[DataSource] = None
    is_consistent: bool
    potential_cache_bypassed: bool = False


class ResolutionResult(BaseModel):
    success: bool
    data: Optional[ReportData] = None
    debug: DebugInfo
    validation: ValidationRecord


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
