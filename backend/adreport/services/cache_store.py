"""Tiered cache store for current-month and current-week snapshots.

WHAT:
    Owns two independent cache tiers (month, week) per platform, keyed by
    (client_id, platform, period_id, tier). Each entry holds a complete
    ReportData snapshot plus the timestamp of the fetch that produced it.

WHY:
    - Whole-snapshot overwrite only: no field-level mutation, so a reader
      never sees a campaign list and totals from different fetches.
    - Compare-and-swap on the entry's own last_updated: a slow background
      refresh that started earlier can never clobber newer data written by
      a later force-fresh fetch, whatever order the writes arrive in.
    - Stale entries (older than the TTL, 3h by default) are still served;
      the resolution engine refreshes them in the background.

BACKENDS:
    - InMemoryCacheBackend: per-key asyncio.Lock around an immutable entry.
    - SqlCacheBackend: `current_period_cache` table; conditional UPDATE
      (WHERE last_updated <= :new) plus insert-if-missing, run in a worker
      thread so the event loop never blocks on the database.

REFERENCES:
    - adreport/models.py (CurrentPeriodCache)
    - adreport/services/live_fetch.py (write-through)
    - adreport/services/period_transition.py (list_entries + invalidate)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adreport.models import CacheTierEnum, CurrentPeriodCache, PlatformEnum, SourceOfTruthEnum
from adreport.schemas import ReportData

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=3)

CacheKey = Tuple[str, str, str, str]


def _utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime (SQLite hands back naive values)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_value(value) -> str:
    return str(getattr(value, "value", value))


@dataclass(frozen=True)
class CacheEntry:
    """One cached snapshot. Immutable; replaced whole on refresh."""

    client_id: str
    platform: PlatformEnum
    period_id: str
    tier: CacheTierEnum
    snapshot: ReportData
    last_updated: datetime
    source_of_truth: SourceOfTruthEnum = SourceOfTruthEnum.live_api

    @property
    def key(self) -> CacheKey:
        return make_key(self.client_id, self.platform, self.period_id, self.tier)

    def age(self, now: datetime) -> timedelta:
        return _utc(now) - _utc(self.last_updated)


def make_key(client_id: str, platform, period_id: str, tier) -> CacheKey:
    return (str(client_id), _enum_value(platform), str(period_id), _enum_value(tier))


# =============================================================================
# BACKENDS
# =============================================================================

class InMemoryCacheBackend:
    """Process-local backend. Safe for concurrent coroutines on one loop."""

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._locks: Dict[CacheKey, asyncio.Lock] = {}

    def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        # Entries are immutable; a dict read returns either the old or the new one
        return self._entries.get(key)

    async def put(self, entry: CacheEntry) -> bool:
        async with self._lock_for(entry.key):
            existing = self._entries.get(entry.key)
            if existing is not None and _utc(existing.last_updated) > _utc(entry.last_updated):
                return False
            self._entries[entry.key] = entry
            return True

    async def delete(self, key: CacheKey) -> None:
        async with self._lock_for(key):
            self._entries.pop(key, None)

    async def list_entries(self) -> List[CacheEntry]:
        return list(self._entries.values())


class SqlCacheBackend:
    """`current_period_cache` table backend.

    WHAT:
        Runs each operation in its own session inside a worker thread.
    WHY:
        SQLAlchemy sessions are blocking; the event loop keeps serving
        other clients while the database answers.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # --- sync implementations (worker thread) ---------------------------
    def _row_to_entry(self, row: CurrentPeriodCache) -> CacheEntry:
        return CacheEntry(
            client_id=row.client_id,
            platform=PlatformEnum(_enum_value(row.platform)),
            period_id=row.period_id,
            tier=CacheTierEnum(_enum_value(row.tier)),
            snapshot=ReportData.model_validate(row.snapshot),
            last_updated=_utc(row.last_updated),
            source_of_truth=SourceOfTruthEnum(_enum_value(row.source_of_truth)),
        )

    def _filter(self, query, key: CacheKey):
        client_id, platform, period_id, tier = key
        return query.filter(
            CurrentPeriodCache.client_id == client_id,
            CurrentPeriodCache.platform == PlatformEnum(platform),
            CurrentPeriodCache.period_id == period_id,
            CurrentPeriodCache.tier == CacheTierEnum(tier),
        )

    def _get_sync(self, key: CacheKey) -> Optional[CacheEntry]:
        db = self._session_factory()
        try:
            row = self._filter(db.query(CurrentPeriodCache), key).first()
            return self._row_to_entry(row) if row else None
        finally:
            db.close()

    def _put_sync(self, entry: CacheEntry) -> bool:
        client_id, platform, period_id, tier = entry.key
        # Stored naive UTC; SQLite has no timezone support
        new_ts = _utc(entry.last_updated).replace(tzinfo=None)
        payload = entry.snapshot.model_dump(mode="json")

        db = self._session_factory()
        try:
            for _ in range(2):
                result = db.execute(
                    update(CurrentPeriodCache)
                    .where(
                        CurrentPeriodCache.client_id == client_id,
                        CurrentPeriodCache.platform == PlatformEnum(platform),
                        CurrentPeriodCache.period_id == period_id,
                        CurrentPeriodCache.tier == CacheTierEnum(tier),
                        CurrentPeriodCache.last_updated <= new_ts,
                    )
                    .values(
                        snapshot=payload,
                        last_updated=new_ts,
                        source_of_truth=entry.source_of_truth,
                    )
                )
                if result.rowcount:
                    db.commit()
                    return True

                if self._filter(db.query(CurrentPeriodCache.id), entry.key).first() is not None:
                    # Row exists with a newer last_updated: this write lost the race
                    db.rollback()
                    return False

                db.add(CurrentPeriodCache(
                    client_id=client_id,
                    platform=PlatformEnum(platform),
                    period_id=period_id,
                    tier=CacheTierEnum(tier),
                    snapshot=payload,
                    last_updated=new_ts,
                    source_of_truth=entry.source_of_truth,
                ))
                try:
                    db.commit()
                    return True
                except IntegrityError:
                    # Concurrent insert won; retry as a conditional update
                    db.rollback()
            return False
        finally:
            db.close()

    def _delete_sync(self, key: CacheKey) -> None:
        db = self._session_factory()
        try:
            self._filter(db.query(CurrentPeriodCache), key).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def _list_sync(self) -> List[CacheEntry]:
        db = self._session_factory()
        try:
            return [self._row_to_entry(row) for row in db.query(CurrentPeriodCache).all()]
        finally:
            db.close()

    # --- async surface --------------------------------------------------
    async def get(self, key: CacheKey) -> Optional[CacheEntry]:
        return await asyncio.to_thread(self._get_sync, key)

    async def put(self, entry: CacheEntry) -> bool:
        return await asyncio.to_thread(self._put_sync, entry)

    async def delete(self, key: CacheKey) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    async def list_entries(self) -> List[CacheEntry]:
        return await asyncio.to_thread(self._list_sync)


# =============================================================================
# STORE
# =============================================================================

@dataclass
class TieredCacheStore:
    """Keyed get/put/invalidate plus staleness checks over one backend.

    USAGE:
        store = TieredCacheStore(SqlCacheBackend(SessionLocal))
        entry = await store.get("client-1", "meta", "2025-09", "month")
        if entry and not store.is_stale(entry, now):
            ...
    """

    backend: object = field(default_factory=InMemoryCacheBackend)
    ttl: timedelta = DEFAULT_TTL

    async def get(self, client_id: str, platform, period_id: str, tier) -> Optional[CacheEntry]:
        return await self.backend.get(make_key(client_id, platform, period_id, tier))

    async def put(self, entry: CacheEntry) -> bool:
        """Replace the snapshot for the entry's key.

        Returns:
            True if stored; False if a newer entry was already present.
        """
        applied = await self.backend.put(entry)
        if applied:
            logger.info(
                "[CACHE_STORE] Stored %s:%s:%s (%s) last_updated=%s",
                entry.client_id, _enum_value(entry.platform), entry.period_id,
                _enum_value(entry.tier), entry.last_updated.isoformat(),
            )
        else:
            logger.info(
                "[CACHE_STORE] Rejected older write for %s:%s:%s (%s) last_updated=%s",
                entry.client_id, _enum_value(entry.platform), entry.period_id,
                _enum_value(entry.tier), entry.last_updated.isoformat(),
            )
        return applied

    def is_stale(self, entry: CacheEntry, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return entry.age(now) > self.ttl

    async def invalidate(self, client_id: str, platform, period_id: str, tier) -> None:
        await self.backend.delete(make_key(client_id, platform, period_id, tier))
        logger.info("[CACHE_STORE] Invalidated %s:%s:%s (%s)", client_id, _enum_value(platform), period_id, _enum_value(tier))

    async def list_entries(self) -> List[CacheEntry]:
        return await self.backend.list_entries()
