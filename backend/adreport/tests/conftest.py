"""Pytest configuration for adreport tests

WHAT: Shared fixtures for the resolution engine, live fetch orchestrator and stores
WHY: Every scenario needs the same fakes: a fixed clock, scripted platform
     adapters (call counters, gates, failures) and isolated SQLite databases
REFERENCES:
    - adreport/services/resolution_engine.py
    - adreport/services/live_fetch.py
    - adreport/services/cache_store.py
"""

import asyncio
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from adreport.models import Base, PlatformEnum
from adreport.schemas import DateRange
from adreport.services.account_directory import StaticAccountDirectory
from adreport.services.action_maps import GOOGLE_ACTION_MAP, META_ACTION_MAP
from adreport.services.cache_store import InMemoryCacheBackend, TieredCacheStore
from adreport.services.live_fetch import LiveFetchOrchestrator
from adreport.services.platform_adapters import PlatformAdapter
from adreport.services.resolution_engine import ResolutionEngine


# "Today" for most scenarios: Wednesday 2025-09-17, ISO week 2025-W38
TODAY = date(2025, 9, 17)
NOW = datetime(2025, 9, 17, 12, 0, tzinfo=timezone.utc)

CURRENT_MONTH_RANGE = DateRange(start=date(2025, 9, 1), end=date(2025, 9, 30))
CURRENT_WEEK_RANGE = DateRange(start=date(2025, 9, 15), end=date(2025, 9, 21))


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def meta_row(campaign_id: str = "c1", spend: str = "100.00", impressions: str = "10000", clicks: str = "200", **extra) -> Dict[str, Any]:
    """Raw Meta insight row as returned by MetaAdsClient.get_campaign_insights."""
    row = {
        "campaign_id": campaign_id,
        "campaign_name": f"Campaign {campaign_id}",
        "spend": spend,
        "impressions": impressions,
        "clicks": clicks,
        "reach": "8000",
        # Platform ratios that must never reach the output
        "ctr": "99.9",
        "cpc": "42.0",
        "actions": [
            {"action_type": "omni_purchase", "value": "4"},
            {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "4"},
        ],
        "action_values": [
            {"action_type": "omni_purchase", "value": "800.50"},
        ],
    }
    row.update(extra)
    return row


class FakeAdapter(PlatformAdapter):
    """Scripted platform capability.

    Attributes:
        calls: Number of fetch_insights invocations
        requested: (account_id, date_range) per call
        errors: Exceptions raised by the next calls, in order
        gate: If set, each fetch waits on it (created inside the running loop)
        delay: Seconds each fetch sleeps before answering
    """

    def __init__(self, platform: PlatformEnum = PlatformEnum.meta, rows: Optional[List[Dict[str, Any]]] = None):
        self.platform = platform
        self.action_type_map = META_ACTION_MAP if platform == PlatformEnum.meta else GOOGLE_ACTION_MAP
        self.rows = rows if rows is not None else [meta_row()]
        self.calls = 0
        self.requested: List[tuple] = []
        self.errors: List[Exception] = []
        self.gate: Optional[asyncio.Event] = None
        self.delay: float = 0.0

    async def fetch_insights(self, account_id: str, date_range: DateRange) -> List[Dict[str, Any]]:
        self.calls += 1
        self.requested.append((account_id, date_range))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return [dict(row) for row in self.rows]


class FakeHistoricalStore:
    """In-memory historical tier keyed by (client, platform, type, date)."""

    def __init__(self):
        self.summaries: Dict[tuple, Any] = {}
        self.reads: List[tuple] = []
        self.error: Optional[Exception] = None
        self.delay: float = 0.0

    async def get_summary(self, client_id, platform, summary_type, summary_date):
        key = (client_id, getattr(platform, "value", platform), getattr(summary_type, "value", summary_type), summary_date)
        self.reads.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.summaries.get(key)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def meta_adapter() -> FakeAdapter:
    return FakeAdapter(PlatformEnum.meta)


@pytest.fixture
def google_adapter() -> FakeAdapter:
    return FakeAdapter(PlatformEnum.google, rows=[{
        "campaign_id": "g1",
        "campaign_name": "Search - Brand",
        "spend": 50.0,
        "impressions": 2000,
        "clicks": 100,
        "conversions": 3.0,
        "ctr": 0.05,
        "average_cpc": 500000,
        "actions": [{"action_type": "Rezerwacja - zakup", "value": 3.0}],
        "action_values": [{"action_type": "Rezerwacja - zakup", "value": 450.0}],
    }])


@pytest.fixture
def accounts() -> StaticAccountDirectory:
    return StaticAccountDirectory({
        ("client-1", "meta"): "act_111",
        ("client-1", "google"): "1234567890",
        ("client-2", "meta"): "act_222",
    })


@pytest.fixture
def cache_store() -> TieredCacheStore:
    return TieredCacheStore(InMemoryCacheBackend())


@pytest.fixture
def historical_store() -> FakeHistoricalStore:
    return FakeHistoricalStore()


@pytest.fixture
def orchestrator(meta_adapter, google_adapter, cache_store, accounts, clock) -> LiveFetchOrchestrator:
    return LiveFetchOrchestrator(
        adapters={"meta": meta_adapter, "google": google_adapter},
        cache_store=cache_store,
        accounts=accounts,
        timeout_seconds=1.0,
        store_timeout_seconds=1.0,
        clock=clock,
    )


@pytest.fixture
def engine(cache_store, historical_store, orchestrator, clock) -> ResolutionEngine:
    return ResolutionEngine(
        cache_store=cache_store,
        historical_store=historical_store,
        orchestrator=orchestrator,
        clock=clock,
        store_timeout_seconds=1.0,
        refresh_cooldown_seconds=300.0,
    )


@pytest.fixture
def session_factory(tmp_path):
    """SQLite file database per test (in-memory databases are per-connection)."""
    db_engine = create_engine(
        f"sqlite:///{tmp_path / 'adreport_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=db_engine)
    yield sessionmaker(bind=db_engine, autoflush=False, autocommit=False)
    db_engine.dispose()
