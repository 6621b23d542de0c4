"""SQLAlchemy ORM models and enums.

Three collections back the freshness resolution engine:
`clients` (which platform account a client reports on), `current_period_cache`
(the tiered month/week cache, one row per client/platform/period/tier) and
`campaign_summaries` (backfilled monthly and weekly aggregates, read-only from
the engine's point of view).
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Date, Enum, ForeignKey, JSON, Numeric, Integer, UniqueConstraint
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _enum_values(obj):
    return [e.value for e in obj]


def _utcnow() -> datetime:
    """Naive UTC, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums ---------------------------------------------------------

class PlatformEnum(str, enum.Enum):
    meta = "meta"
    google = "google"


class CacheTierEnum(str, enum.Enum):
    month = "month"
    week = "week"


class SourceOfTruthEnum(str, enum.Enum):
    live_api = "live-api"
    backfill = "backfill"


class SummaryTypeEnum(str, enum.Enum):
    monthly = "monthly"
    weekly = "weekly"


# Tables --------------------------------------------------------

class Client(Base):
    """A reporting client with at most one ad account per platform.

    The engine only needs the platform account ids; everything else about
    the client lives with the collaborators that render reports.
    """
    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    meta_ad_account_id = Column(String, nullable=True)  # "act_123456789"
    google_customer_id = Column(String, nullable=True)  # 10 digits, no dashes
    created_at = Column(DateTime, default=_utcnow)

    cache_entries = relationship("CurrentPeriodCache", back_populates="client")
    summaries = relationship("CampaignSummary", back_populates="client")

    def __str__(self):
        return self.name


class CurrentPeriodCache(Base):
    """Cached snapshot for the current month or current ISO week.

    WHAT:
        One row per (client, platform, period_id, tier). The snapshot JSON
        holds the campaign list together with the totals derived from it.
    WHY:
        The whole snapshot is replaced in one statement so a reader never sees
        totals and line items from different fetches.
    """
    __tablename__ = "current_period_cache"
    __table_args__ = (
        UniqueConstraint("client_id", "platform", "period_id", "tier", name="uq_current_period_cache_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    platform = Column(Enum(PlatformEnum, values_callable=_enum_values), nullable=False)
    period_id = Column(String, nullable=False)  # "2025-09" or "2025-W36"
    tier = Column(Enum(CacheTierEnum, values_callable=_enum_values), nullable=False)
    snapshot = Column(JSON, nullable=False)
    # Stamped when the upstream request was issued; compare-and-swap key
    last_updated = Column(DateTime, nullable=False)
    source_of_truth = Column(
        Enum(SourceOfTruthEnum, values_callable=_enum_values),
        nullable=False,
        default=SourceOfTruthEnum.live_api,
    )

    client = relationship("Client", back_populates="cache_entries")

    def __str__(self):
        return f"{self.client_id}:{self.platform.value}:{self.period_id}"


class CampaignSummary(Base):
    """Backfilled aggregate for a fully elapsed month or week.

    Written by the backfill job and by the period transition archiver;
    the resolution engine only reads it.
    """
    __tablename__ = "campaign_summaries"
    __table_args__ = (
        UniqueConstraint("client_id", "platform", "summary_type", "summary_date", name="uq_campaign_summary_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False, index=True)
    platform = Column(Enum(PlatformEnum, values_callable=_enum_values), nullable=False)
    summary_type = Column(Enum(SummaryTypeEnum, values_callable=_enum_values), nullable=False)
    summary_date = Column(Date, nullable=False)  # First day of the month, or the Monday of the week
    campaign_data = Column(JSON, nullable=False, default=list)

    # Denormalized totals for other readers; the engine re-derives them from campaign_data
    total_spend = Column(Numeric(14, 2), default=0)
    total_impressions = Column(Integer, default=0)
    total_clicks = Column(Integer, default=0)
    total_conversions = Column(Integer, default=0)

    data_source = Column(String, nullable=True)  # backfill, period_transition_archive
    last_updated = Column(DateTime, default=_utcnow)

    client = relationship("Client", back_populates="summaries")

    def __str__(self):
        return f"{self.client_id}:{self.platform.value}:{self.summary_type.value}:{self.summary_date}"
