"""Tests for the SQL-backed historical aggregate store.

WHAT:
    Zero-or-one lookups by (client, platform, summary_type, summary_date),
    ratio recomputation on read and the archive upsert.

REFERENCES:
    - adreport/services/historical_store.py
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from adreport.models import CampaignSummary, Client, PlatformEnum, SummaryTypeEnum
from adreport.schemas import CampaignMetrics
from adreport.services.historical_store import HistoricalAggregateStore
from adreport.services.metric_normalizer import build_report


@pytest.fixture
def store(session_factory):
    db = session_factory()
    db.add(Client(id="client-1", name="Hotel Aurora", meta_ad_account_id="act_111"))
    db.add(CampaignSummary(
        client_id="client-1",
        platform=PlatformEnum.meta,
        summary_type=SummaryTypeEnum.monthly,
        summary_date=date(2025, 8, 1),
        campaign_data=[
            # ctr/cpc as stored by an older backfill (platform values)
            {"campaign_id": "c1", "spend": 300.0, "impressions": 30000, "clicks": 600, "ctr": 9.9, "cpc": 9.9},
            {"campaign_id": "c2", "spend": 100.0, "impressions": 10000, "clicks": 400},
        ],
        data_source="backfill",
    ))
    db.commit()
    db.close()
    return HistoricalAggregateStore(session_factory)


class TestGetSummary:
    def test_hit_returns_campaigns_with_recomputed_ratios(self, store):
        summary = asyncio.run(store.get_summary("client-1", PlatformEnum.meta, SummaryTypeEnum.monthly, date(2025, 8, 1)))

        assert summary is not None
        assert summary.data_source == "backfill"
        assert [c.campaign_id for c in summary.campaigns] == ["c1", "c2"]
        assert summary.campaigns[0].ctr == pytest.approx(2.0)
        assert summary.campaigns[0].cpc == pytest.approx(0.5)

    def test_report_totals_come_from_campaign_list(self, store):
        summary = asyncio.run(store.get_summary("client-1", "meta", "monthly", date(2025, 8, 1)))

        report = summary.to_report()

        assert report.stats.total_spend == 400.0
        assert report.stats.total_clicks == 1000
        assert report.stats.average_ctr == pytest.approx(2.5)

    @pytest.mark.parametrize(
        "platform,summary_type,summary_date",
        [
            ("google", "monthly", date(2025, 8, 1)),
            ("meta", "weekly", date(2025, 8, 1)),
            ("meta", "monthly", date(2025, 7, 1)),
        ],
    )
    def test_miss_returns_none(self, store, platform, summary_type, summary_date):
        assert asyncio.run(store.get_summary("client-1", platform, summary_type, summary_date)) is None


class TestArchiveSummary:
    def test_archive_inserts_then_upserts(self, store):
        first = build_report([CampaignMetrics(campaign_id="w1", spend=10.0, impressions=100, clicks=5)])
        second = build_report([CampaignMetrics(campaign_id="w1", spend=12.0, impressions=120, clicks=6)])

        async def scenario():
            await store.archive_summary("client-1", "meta", "weekly", date(2025, 9, 8), first)
            await store.archive_summary("client-1", "meta", "weekly", date(2025, 9, 8), second)
            return await store.get_summary("client-1", "meta", "weekly", date(2025, 9, 8))

        summary = asyncio.run(scenario())

        assert summary.data_source == "period_transition_archive"
        assert len(summary.campaigns) == 1
        assert summary.campaigns[0].spend == 12.0

    def test_archive_stamps_naive_utc(self, store, session_factory):
        """WHAT: last_updated is stored as naive UTC, like cache entries."""
        report = build_report([CampaignMetrics(campaign_id="m1", spend=5.0, impressions=50, clicks=2)])
        before = datetime.now(timezone.utc).replace(tzinfo=None)

        asyncio.run(store.archive_summary("client-1", "meta", "monthly", date(2025, 7, 1), report))

        db = session_factory()
        try:
            row = db.query(CampaignSummary).filter(CampaignSummary.summary_date == date(2025, 7, 1)).one()
            assert row.last_updated.tzinfo is None
            assert before <= row.last_updated <= before + timedelta(minutes=1)
        finally:
            db.close()
