"""Period transition archiver.

WHAT:
    Moves cache entries whose period has ended (last month, last ISO week)
    into `campaign_summaries` and removes them from the cache tier.

WHY:
    Once a month or week is over the classifier routes it to the historical
    store, so the final cached snapshot would otherwise never be read again.
    Archiving it keeps the historical tier populated for periods the
    backfill job has not reached yet.

ORDERING:
    archive first, invalidate second. A crash between the two leaves a
    duplicate (cache + summary), never a gap.

REFERENCES:
    - adreport/workers/arq_worker.py (archive_elapsed_periods, daily)
    - adreport/services/historical_store.py (archive_summary upsert)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List

from adreport.models import CacheTierEnum, SummaryTypeEnum
from adreport.services.cache_store import CacheEntry, TieredCacheStore
from adreport.services.historical_store import HistoricalAggregateStore
from adreport.services.period_classifier import period_end_from_id, period_start_from_id

logger = logging.getLogger(__name__)

ARCHIVE_DATA_SOURCE = "period_transition_archive"


@dataclass
class TransitionResult:
    archived: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def summary_key_for(entry: CacheEntry):
    """(summary_type, summary_date) an elapsed cache entry is archived under."""
    start = period_start_from_id(entry.period_id)
    if CacheTierEnum(entry.tier) == CacheTierEnum.week:
        return SummaryTypeEnum.weekly, start
    return SummaryTypeEnum.monthly, start


class PeriodTransitionArchiver:
    def __init__(self, cache_store: TieredCacheStore, historical_store: HistoricalAggregateStore):
        self.cache_store = cache_store
        self.historical_store = historical_store

    async def archive_elapsed(self, today: date) -> TransitionResult:
        """Archive and invalidate every cache entry whose period ended before `today`."""
        result = TransitionResult()
        entries = await self.cache_store.list_entries()

        for entry in entries:
            if period_end_from_id(entry.period_id) >= today:
                continue

            label = ":".join(entry.key)
            summary_type, summary_date = summary_key_for(entry)
            try:
                await self.historical_store.archive_summary(
                    entry.client_id,
                    entry.platform,
                    summary_type,
                    summary_date,
                    entry.snapshot,
                    data_source=ARCHIVE_DATA_SOURCE,
                )
                await self.cache_store.invalidate(entry.client_id, entry.platform, entry.period_id, entry.tier)
                result.archived.append(label)
            except Exception as e:
                logger.error(f"[TRANSITION] Failed to archive {label}: {e}")
                result.errors.append(f"{label}: {e}")

        logger.info(
            f"[TRANSITION] {len(result.archived)} archived, {len(result.errors)} failed "
            f"(of {len(entries)} cache entries)"
        )
        return result
