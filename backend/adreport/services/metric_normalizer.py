"""Metric normalizer: platform campaign rows -> canonical CampaignMetrics.

WHAT:
    Converts one raw campaign record from Meta or Google into the
    canonical CampaignMetrics shape, and aggregates a campaign list into
    Stats and ConversionMetrics.

WHY:
    - CTR and CPC are ALWAYS recomputed from raw counts. Platform-reported
      ratios use different click definitions (all clicks vs link clicks),
      and mixing them produced dashboard totals that disagreed with the
      campaign table. Raw ratio fields (ctr, cpc, average_cpc) are ignored.
    - Totals are derived from the campaign list every time (sums and
      ratio-of-sums), so line items and totals can never drift apart.

RAW SHAPE (both platforms, produced by the adapters):
    {
        "campaign_id": "...", "campaign_name": "...", "status": "...",
        "spend": "12.34", "impressions": "1000", "clicks": "25", "reach": "800",
        "conversions": 3.0,                          # optional (Google)
        "actions": [{"action_type": "...", "value": "..."}],
        "action_values": [{"action_type": "...", "value": "..."}],
    }

REFERENCES:
    - adreport/services/action_maps.py (per-platform funnel rules)
    - adreport/schemas.py (CampaignMetrics, Stats, ConversionMetrics)
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

from adreport.schemas import CampaignMetrics, ConversionMetrics, FunnelMetrics, ReportData, Stats
from adreport.services.action_maps import ACTION_MAPS, ActionTypeMap

logger = logging.getLogger(__name__)

_COUNT_FIELDS = (
    "click_to_call",
    "email_contacts",
    "booking_step_1",
    "booking_step_2",
    "booking_step_3",
    "reservations",
)


# =============================================================================
# HELPERS
# =============================================================================

def _to_float(value: Any) -> float:
    """Coerce SDK values ("12.34", None, Decimal, 12) to float; junk becomes 0."""
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _to_int(value: Any) -> int:
    return int(_to_float(value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_ctr(clicks: float, impressions: float) -> float:
    """Click-through rate in percent; 0 when there were no impressions."""
    return clicks / impressions * 100 if impressions > 0 else 0.0


def compute_cpc(spend: float, clicks: float) -> float:
    """Cost per click; 0 when there were no clicks."""
    return spend / clicks if clicks > 0 else 0.0


def _totals_by_type(entries: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, float]:
    """Sum values per lowercase action type, skipping negative or unparsable values."""
    totals: Dict[str, float] = {}
    for entry in entries or []:
        if not isinstance(entry, dict):
            continue
        action_type = str(entry.get("action_type") or "").lower()
        if not action_type:
            continue
        try:
            value = float(entry.get("value") or 0)
        except (TypeError, ValueError):
            logger.debug("[NORMALIZER] Skipping unparsable value for %s: %r", action_type, entry.get("value"))
            continue
        if value < 0 or not math.isfinite(value):
            continue
        totals[action_type] = totals.get(action_type, 0.0) + value
    return totals


# =============================================================================
# FUNNEL EXTRACTION
# =============================================================================

def extract_funnel(
    actions: Optional[Iterable[Dict[str, Any]]],
    action_values: Optional[Iterable[Dict[str, Any]]],
    action_map: ActionTypeMap,
    campaign_name: str = "",
) -> FunnelMetrics:
    """Apply an action-type map to one campaign's action lists.

    For each rule, the first priority group with any matching action type
    wins; matches inside that group are summed. Unrecognized action types
    contribute nothing.
    """
    sources = {
        "actions": _totals_by_type(actions),
        "action_values": _totals_by_type(action_values),
    }

    values: Dict[str, float] = {}
    for rule in action_map.rules:
        by_type = sources[rule.source]
        amount = 0.0
        for group in rule.groups:
            matched = [
                value
                for action_type, value in by_type.items()
                if any(action_map.matches(pattern, action_type) for pattern in group)
                and not any(excluded in action_type for excluded in rule.exclude)
            ]
            if matched:
                amount = sum(matched)
                break
        values[rule.field] = amount

    funnel = FunnelMetrics(
        **{name: _round_half_up(values.get(name, 0.0)) for name in _COUNT_FIELDS},
        reservation_value=round(values.get("reservation_value", 0.0), 2),
    )
    _warn_on_funnel_inversion(funnel, campaign_name)
    return funnel


def _warn_on_funnel_inversion(funnel: FunnelMetrics, campaign_name: str) -> None:
    """Later funnel steps exceeding earlier ones usually means a tracking problem."""
    steps = (
        ("booking_step_1", funnel.booking_step_1),
        ("booking_step_2", funnel.booking_step_2),
        ("booking_step_3", funnel.booking_step_3),
        ("reservations", funnel.reservations),
    )
    for (prev_name, prev_value), (name, value) in zip(steps, steps[1:]):
        if prev_value > 0 and value > prev_value:
            logger.warning(
                "[NORMALIZER] Funnel inversion for campaign '%s': %s (%d) > %s (%d)",
                campaign_name or "unknown", name, value, prev_name, prev_value,
            )


# =============================================================================
# PUBLIC API
# =============================================================================

def normalize(
    raw_campaign: Dict[str, Any],
    platform: str,
    action_map: Optional[ActionTypeMap] = None,
) -> CampaignMetrics:
    """Convert one raw platform campaign row into CampaignMetrics.

    Args:
        raw_campaign: Row as returned by a PlatformAdapter
        platform: "meta" or "google" (selects the default action map)
        action_map: Override map (adapters pass their own)

    Returns:
        CampaignMetrics with ctr/cpc recomputed from spend, clicks and impressions.
    """
    action_map = action_map or ACTION_MAPS[str(getattr(platform, "value", platform))]

    name = str(raw_campaign.get("campaign_name") or raw_campaign.get("name") or "")
    spend = round(_to_float(raw_campaign.get("spend")), 2)
    impressions = _to_int(raw_campaign.get("impressions"))
    clicks = _to_int(raw_campaign.get("clicks"))

    funnel = extract_funnel(
        raw_campaign.get("actions"),
        raw_campaign.get("action_values"),
        action_map,
        campaign_name=name,
    )

    # Google reports a conversions metric; Meta's conversions are the purchases
    if raw_campaign.get("conversions") is not None:
        conversions = _to_float(raw_campaign.get("conversions"))
    else:
        conversions = float(funnel.reservations)

    return CampaignMetrics(
        campaign_id=str(raw_campaign.get("campaign_id") or raw_campaign.get("id") or ""),
        campaign_name=name,
        status=raw_campaign.get("status"),
        spend=spend,
        impressions=impressions,
        clicks=clicks,
        ctr=compute_ctr(clicks, impressions),
        cpc=compute_cpc(spend, clicks),
        conversions=conversions,
        reach=_to_int(raw_campaign.get("reach")),
        funnel=funnel,
    )


def aggregate(campaigns: List[CampaignMetrics]) -> Tuple[Stats, ConversionMetrics]:
    """Derive Stats and ConversionMetrics from a campaign list.

    Sums for counts and money; ratios are ratio-of-sums, never an average
    of per-campaign ratios.
    """
    total_spend = sum(c.spend for c in campaigns)
    total_impressions = sum(c.impressions for c in campaigns)
    total_clicks = sum(c.clicks for c in campaigns)

    stats = Stats(
        total_spend=round(total_spend, 2),
        total_impressions=total_impressions,
        total_clicks=total_clicks,
        total_conversions=sum(c.conversions for c in campaigns),
        average_ctr=compute_ctr(total_clicks, total_impressions),
        average_cpc=compute_cpc(total_spend, total_clicks),
    )

    funnel_totals = {name: sum(getattr(c.funnel, name) for c in campaigns) for name in _COUNT_FIELDS}
    reservation_value = round(sum(c.funnel.reservation_value for c in campaigns), 2)
    reservations = funnel_totals["reservations"]

    conversion_metrics = ConversionMetrics(
        **funnel_totals,
        reservation_value=reservation_value,
        roas=reservation_value / total_spend if total_spend > 0 else 0.0,
        cost_per_reservation=total_spend / reservations if reservations > 0 else 0.0,
        reach=sum(c.reach for c in campaigns),
    )
    return stats, conversion_metrics


def build_report(campaigns: List[CampaignMetrics], data_available: bool = True) -> ReportData:
    """Bundle a campaign list with its derived totals."""
    stats, conversion_metrics = aggregate(campaigns)
    return ReportData(
        stats=stats,
        conversion_metrics=conversion_metrics,
        campaigns=list(campaigns),
        data_available=data_available,
    )
