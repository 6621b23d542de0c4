"""Historical aggregate store: backfilled monthly and weekly summaries.

WHAT:
    Read access to `campaign_summaries`, keyed by
    (client_id, platform, summary_type, summary_date). Returns zero or one
    summary with its campaign list.

WHY:
    Fully elapsed periods are immutable once backfilled. The resolution
    engine answers them from here and never refreshes them live; filling
    gaps is the backfill job's responsibility.

    `archive_summary` is the only write path and is used by the period
    transition job, never by the engine.

REFERENCES:
    - adreport/models.py (CampaignSummary)
    - adreport/services/period_transition.py (archive_summary caller)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from adreport.models import CampaignSummary, PlatformEnum, SummaryTypeEnum
from adreport.schemas import CampaignMetrics, ReportData
from adreport.services.metric_normalizer import build_report, compute_cpc, compute_ctr

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoricalSummary:
    client_id: str
    platform: PlatformEnum
    summary_type: SummaryTypeEnum
    summary_date: date
    campaigns: List[CampaignMetrics] = field(default_factory=list)
    data_source: Optional[str] = None

    def to_report(self) -> ReportData:
        """Totals are re-derived from the campaign list, never read from the row."""
        return build_report(self.campaigns)


def _parse_campaign(payload: Dict[str, Any]) -> CampaignMetrics:
    campaign = CampaignMetrics.model_validate(payload)
    # Older backfills stored platform ratios; recompute like live data
    return campaign.model_copy(update={
        "ctr": compute_ctr(campaign.clicks, campaign.impressions),
        "cpc": compute_cpc(campaign.spend, campaign.clicks),
    })


class HistoricalAggregateStore:
    """`campaign_summaries` access. Blocking SQL runs in a worker thread."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _get_summary_sync(
        self,
        client_id: str,
        platform: PlatformEnum,
        summary_type: SummaryTypeEnum,
        summary_date: date,
    ) -> Optional[HistoricalSummary]:
        db = self._session_factory()
        try:
            row = (
                db.query(CampaignSummary)
                .filter(
                    CampaignSummary.client_id == client_id,
                    CampaignSummary.platform == PlatformEnum(platform),
                    CampaignSummary.summary_type == SummaryTypeEnum(summary_type),
                    CampaignSummary.summary_date == summary_date,
                )
                .first()
            )
            if row is None:
                return None
            return HistoricalSummary(
                client_id=row.client_id,
                platform=PlatformEnum(platform),
                summary_type=SummaryTypeEnum(summary_type),
                summary_date=row.summary_date,
                campaigns=[_parse_campaign(c) for c in (row.campaign_data or [])],
                data_source=row.data_source,
            )
        finally:
            db.close()

    async def get_summary(
        self,
        client_id: str,
        platform: PlatformEnum,
        summary_type: SummaryTypeEnum,
        summary_date: date,
    ) -> Optional[HistoricalSummary]:
        """Zero-or-one lookup by the summary key."""
        summary = await asyncio.to_thread(
            self._get_summary_sync, client_id, platform, summary_type, summary_date
        )
        logger.debug(
            "[HISTORICAL] %s %s:%s:%s:%s",
            "Hit" if summary else "Miss",
            client_id, getattr(platform, "value", platform),
            getattr(summary_type, "value", summary_type), summary_date,
        )
        return summary

    # --- Write path (period transition job only) ------------------------
    def _archive_sync(
        self,
        client_id: str,
        platform: PlatformEnum,
        summary_type: SummaryTypeEnum,
        summary_date: date,
        report: ReportData,
        data_source: str,
    ) -> None:
        db = self._session_factory()
        try:
            row = (
                db.query(CampaignSummary)
                .filter(
                    CampaignSummary.client_id == client_id,
                    CampaignSummary.platform == PlatformEnum(platform),
                    CampaignSummary.summary_type == SummaryTypeEnum(summary_type),
                    CampaignSummary.summary_date == summary_date,
                )
                .first()
            )
            if row is None:
                row = CampaignSummary(
                    client_id=client_id,
                    platform=PlatformEnum(platform),
                    summary_type=SummaryTypeEnum(summary_type),
                    summary_date=summary_date,
                )
                db.add(row)

            row.campaign_data = [c.model_dump(mode="json") for c in report.campaigns]
            row.total_spend = report.stats.total_spend
            row.total_impressions = report.stats.total_impressions
            row.total_clicks = report.stats.total_clicks
            row.total_conversions = int(report.stats.total_conversions)
            row.data_source = data_source
            row.last_updated = datetime.now(timezone.utc).replace(tzinfo=None)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def archive_summary(
        self,
        client_id: str,
        platform: PlatformEnum,
        summary_type: SummaryTypeEnum,
        summary_date: date,
        report: ReportData,
        data_source: str = "period_transition_archive",
    ) -> None:
        """Upsert a summary row from a final cache snapshot."""
        await asyncio.to_thread(
            self._archive_sync, client_id, platform, summary_type, summary_date, report, data_source
        )
        logger.info(
            "[HISTORICAL] Archived %s:%s:%s:%s (%d campaigns)",
            client_id, getattr(platform, "value", platform),
            getattr(summary_type, "value", summary_type), summary_date, len(report.campaigns),
        )
