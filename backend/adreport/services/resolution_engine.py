"""Resolution engine: the single entry point for report data.

WHAT:
    `resolve(FetchRequest) -> ResolutionResult`. Classifies the period,
    tries the data tiers in priority order, serves stale cache entries while
    refreshing them in the background, and attaches a validation record that
    says which tier was expected to answer and which one did.

WHY:
    Four stores hold the same metrics with different freshness (fresh cache,
    stale cache, backfilled summaries, live API). Reports must say exactly
    where their numbers came from, and "no data collected yet" must never
    look like "campaigns spent nothing" or "the fetch failed".

STATE MACHINE (per request, transient):
    Classify -> TryCache -> TryHistorical | TryLive -> Normalize/Aggregate -> Validate -> Done

TIER RULES:
    ┌────────────────────────────┬────────────────────────────────────────────┐
    │ kind                       │ tier                                       │
    ├────────────────────────────┼────────────────────────────────────────────┤
    │ current-month/current-week │ cache fresh  -> cache-fresh                │
    │                            │ cache stale  -> cache-stale + bg refresh   │
    │                            │ cache miss   -> live-api (write-through)   │
    │                            │ force_fresh  -> live-api (cache peeked     │
    │                            │                only for the validation)    │
    │ historical                 │ database only, even with force_fresh;      │
    │                            │ a miss is success with data_available=False│
    │ custom / all-time          │ live-api, never cached                     │
    └────────────────────────────┴────────────────────────────────────────────┘

FAILURES:
    Live failures return success=False with the upstream message verbatim in
    debug.reason. No placeholder metrics are ever produced. Validation
    mismatches are logged, never raised.

REFERENCES:
    - adreport/services/period_classifier.py
    - adreport/services/cache_store.py
    - adreport/services/historical_store.py
    - adreport/services/live_fetch.py
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from adreport.exceptions import FetchValidationError, ResolutionError
from adreport.models import PlatformEnum
from adreport.schemas import (
    DateRange,
    DebugInfo,
    FetchRequest,
    ReportData,
    ResolutionResult,
    ValidationRecord,
)
from adreport.services.cache_store import CacheEntry, CacheKey, TieredCacheStore, make_key
from adreport.services.historical_store import HistoricalAggregateStore
from adreport.services.live_fetch import LiveFetchOrchestrator
from adreport.services.metric_normalizer import build_report
from adreport.services.period_classifier import (
    ALL_TIME,
    ALL_TIME_MONTHS,
    CURRENT_MONTH,
    CURRENT_WEEK,
    CUSTOM,
    HISTORICAL,
    PeriodClassification,
    classify,
)
from adreport.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

CACHE_FRESH = "cache-fresh"
CACHE_STALE = "cache-stale"
LIVE_API = "live-api"
DATABASE = "database"

NO_HISTORICAL_DATA = "no-historical-data"

# Observed cache states feeding the expected-source rule table
CACHE_HIT_FRESH = "fresh"
CACHE_HIT_STALE = "stale"
CACHE_MISS = "miss"
CACHE_UNAVAILABLE = "unavailable"
CACHE_NOT_READ = "not-read"

_CACHE_POLICIES = {
    CURRENT_MONTH: "smart-cache-month",
    CURRENT_WEEK: "smart-cache-week",
    HISTORICAL: "database-first",
    CUSTOM: "live-only",
    ALL_TIME: "live-only",
}


def expected_source(kind: str, force_fresh: bool, cache_state: str) -> str:
    """Which tier the rule table says should answer.

    For current periods the cache tier is expected unless a read observed a
    miss or force_fresh skipped it. An unreachable cache store is NOT a miss,
    so falling back to live in that case shows up as an inconsistency.
    """
    if kind == HISTORICAL:
        return DATABASE
    if kind in (CUSTOM, ALL_TIME):
        return LIVE_API
    if force_fresh or cache_state == CACHE_MISS:
        return LIVE_API
    if cache_state == CACHE_HIT_STALE:
        return CACHE_STALE
    return CACHE_FRESH


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResolutionEngine:
    """Public entry point: resolve(FetchRequest) -> ResolutionResult.

    USAGE:
        engine = ResolutionEngine(cache_store, historical_store, orchestrator)
        result = await engine.resolve(FetchRequest(
            client_id="client-1",
            date_range=DateRange(start=date(2025, 9, 1), end=date(2025, 9, 30)),
            platform="meta",
        ))
        result.debug.source        # "cache-fresh" | "cache-stale" | "live-api" | "database"
        result.validation          # expected vs actual source
    """

    def __init__(
        self,
        cache_store: TieredCacheStore,
        historical_store: HistoricalAggregateStore,
        orchestrator: LiveFetchOrchestrator,
        clock: Callable[[], datetime] = _utcnow,
        report_timezone: str = "UTC",
        store_timeout_seconds: float = 5.0,
        refresh_cooldown_seconds: float = 300.0,
        all_time_months: int = ALL_TIME_MONTHS,
    ):
        self.cache_store = cache_store
        self.historical_store = historical_store
        self.orchestrator = orchestrator
        self.store_timeout_seconds = store_timeout_seconds
        self.refresh_cooldown_seconds = refresh_cooldown_seconds
        self.all_time_months = all_time_months
        self._clock = clock
        self._tz = ZoneInfo(report_timezone)

        # Detached background refreshes, kept referenced until done
        self._background: Set[asyncio.Task] = set()
        # Cache key -> monotonic time of the last refresh attempt
        self._last_refresh: Dict[CacheKey, float] = {}

    def today(self) -> date:
        return self._clock().astimezone(self._tz).date()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def resolve(self, request: FetchRequest) -> ResolutionResult:
        """Resolve one request. See module docstring for the tier rules.

        Raises:
            FetchValidationError: Malformed request (before any I/O)
        """
        started = time.monotonic()
        today = self.today()
        self.validate_request(request, today)

        classification = classify(request.date_range, today, self.all_time_months)
        fetch_range, capped = self._fetch_range(request.date_range, today)

        logger.info(
            f"[RESOLVER] client={request.client_id} platform={request.platform.value} "
            f"range={request.date_range} kind={classification.kind} "
            f"period={classification.canonical_period_id} force_fresh={request.force_fresh} "
            f"reason={request.reason!r}"
        )

        if classification.kind == HISTORICAL:
            result = await self._resolve_historical(request, classification)
        elif classification.is_cacheable:
            result = await self._resolve_current(request, classification, fetch_range)
        else:
            result = await self._resolve_live_only(request, classification, fetch_range)

        result.debug.date_range_capped = capped
        result.debug.response_time_ms = int((time.monotonic() - started) * 1000)
        self._log_validation(request, classification, result)
        return result

    def validate_request(self, request: FetchRequest, today: date) -> None:
        """Reject malformed requests before any I/O."""
        try:
            platform = PlatformEnum(getattr(request.platform, "value", request.platform))
        except ValueError:
            raise FetchValidationError(f"Unknown platform: {request.platform!r}") from None
        if not self.orchestrator.supports(platform):
            raise FetchValidationError(f"Platform not configured: {platform.value}", platform.value)

        date_range = request.date_range
        if date_range.start > date_range.end:
            raise FetchValidationError(
                f"Invalid date range: start {date_range.start} is after end {date_range.end}",
                platform.value,
            )
        if date_range.start > today:
            raise FetchValidationError(
                f"Invalid date range: start {date_range.start} is in the future (today is {today})",
                platform.value,
            )

    async def wait_for_background_refreshes(self) -> None:
        """Wait for detached refreshes to settle (tests and graceful shutdown)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # TIERS
    # =========================================================================

    async def _resolve_current(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
        fetch_range: DateRange,
    ) -> ResolutionResult:
        entry, cache_state = await self._read_cache(request, classification)
        potential_bypass = False

        if request.force_fresh:
            # Peeked only to record what the cache would have answered
            potential_bypass = entry is not None
            logger.info(
                f"[RESOLVER] Force fresh for {request.client_id}/{classification.canonical_period_id}"
                f" (cache {'hit bypassed' if potential_bypass else cache_state})"
            )
        elif entry is not None:
            now = self._clock()
            source = CACHE_STALE if cache_state == CACHE_HIT_STALE else CACHE_FRESH
            if source == CACHE_STALE:
                self._schedule_refresh(request, classification, fetch_range)
            return self._result(
                request,
                classification,
                success=True,
                data=entry.snapshot,
                source=source,
                expected=expected_source(classification.kind, False, cache_state),
                priority=["cache"],
                cache_age_seconds=int(entry.age(now).total_seconds()),
            )

        expected = expected_source(classification.kind, request.force_fresh, cache_state)
        return await self._live(
            request,
            classification,
            fetch_range,
            expected=expected,
            priority=["cache", "live-api"] if not request.force_fresh else ["live-api"],
            potential_bypass=potential_bypass,
        )

    async def _resolve_historical(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
    ) -> ResolutionResult:
        # Never live: elapsed periods belong to the backfill job, force_fresh or not
        if classification.summary_type is None:
            logger.info(
                f"[RESOLVER] No summary covers {request.date_range} for {request.client_id}; "
                f"only whole weeks and months are backfilled"
            )
            return self._no_historical_data(request, classification)

        try:
            summary = await asyncio.wait_for(
                self.historical_store.get_summary(
                    request.client_id,
                    request.platform,
                    classification.summary_type,
                    classification.summary_date,
                ),
                timeout=self.store_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._historical_failure(
                request, classification, f"Historical store timed out after {self.store_timeout_seconds:g}s"
            )
        except Exception as e:
            logger.error(f"[RESOLVER] Historical store read failed: {e}")
            capture_exception(e, extra={"operation": "historical_read", "client_id": request.client_id})
            return self._historical_failure(request, classification, f"Historical store unavailable: {e}")

        if summary is None:
            logger.info(
                f"[RESOLVER] No historical summary for {request.client_id} "
                f"{classification.summary_type.value} {classification.summary_date}"
            )
            return self._no_historical_data(request, classification)

        return self._result(
            request,
            classification,
            success=True,
            data=summary.to_report(),
            source=DATABASE,
            expected=DATABASE,
            priority=["database"],
        )

    async def _resolve_live_only(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
        fetch_range: DateRange,
    ) -> ResolutionResult:
        return await self._live(
            request,
            classification,
            fetch_range,
            expected=LIVE_API,
            priority=["live-api"],
        )

    async def _live(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
        fetch_range: DateRange,
        expected: str,
        priority: List[str],
        potential_bypass: bool = False,
    ) -> ResolutionResult:
        try:
            campaigns = await self.orchestrator.fetch_live(
                request.client_id, request.platform, fetch_range, classification
            )
        except ResolutionError as e:
            logger.warning(
                f"[RESOLVER] Live fetch failed for {request.client_id}/{request.platform.value} "
                f"{request.date_range}: {e.message}"
            )
            return self._result(
                request,
                classification,
                success=False,
                data=None,
                source=LIVE_API,
                expected=expected,
                priority=priority,
                reason=e.message,
                potential_bypass=potential_bypass,
            )

        return self._result(
            request,
            classification,
            success=True,
            data=build_report(campaigns),
            source=LIVE_API,
            expected=expected,
            priority=priority,
            potential_bypass=potential_bypass,
        )

    # =========================================================================
    # CACHE HELPERS
    # =========================================================================

    async def _read_cache(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
    ) -> Tuple[Optional[CacheEntry], str]:
        """Bounded cache read. An unreachable store degrades to a miss."""
        try:
            entry = await asyncio.wait_for(
                self.cache_store.get(
                    request.client_id,
                    request.platform,
                    classification.canonical_period_id,
                    classification.cache_tier,
                ),
                timeout=self.store_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[RESOLVER] Cache read timed out for {request.client_id}/{classification.canonical_period_id}")
            return None, CACHE_UNAVAILABLE
        except Exception as e:
            logger.warning(f"[RESOLVER] Cache read failed for {request.client_id}/{classification.canonical_period_id}: {e}")
            capture_exception(e, extra={"operation": "cache_read", "client_id": request.client_id})
            return None, CACHE_UNAVAILABLE

        if entry is None:
            return None, CACHE_MISS
        if self.cache_store.is_stale(entry, self._clock()):
            return entry, CACHE_HIT_STALE
        return entry, CACHE_HIT_FRESH

    def _schedule_refresh(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
        fetch_range: DateRange,
    ) -> bool:
        """Start a detached refresh unless one ran for this key recently."""
        key = make_key(request.client_id, request.platform, classification.canonical_period_id, classification.cache_tier)
        fetch_key = self.orchestrator.fetch_key(request.client_id, request.platform, fetch_range, classification)

        if self.orchestrator.is_in_flight(fetch_key):
            logger.info(f"[RESOLVER] Refresh already in flight for {key}")
            return False

        now = time.monotonic()
        last = self._last_refresh.get(key)
        if last is not None and now - last < self.refresh_cooldown_seconds:
            logger.info(
                f"[RESOLVER] Refresh for {key} skipped, cooldown "
                f"{self.refresh_cooldown_seconds - (now - last):.0f}s remaining"
            )
            return False

        self._last_refresh[key] = now
        # Not tied to the caller: cancelling the request leaves the refresh running
        task = asyncio.get_running_loop().create_task(
            self._background_refresh(key, request, classification, fetch_range)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        logger.info(f"[RESOLVER] Background refresh scheduled for {key}")
        return True

    async def _background_refresh(
        self,
        key: CacheKey,
        request: FetchRequest,
        classification: PeriodClassification,
        fetch_range: DateRange,
    ) -> None:
        try:
            entry, cache_state = await self._read_cache(request, classification)
            if cache_state == CACHE_HIT_FRESH:
                logger.info(f"[RESOLVER] Background refresh for {key} skipped, entry became fresh")
                return
            await self.orchestrator.fetch_live(request.client_id, request.platform, fetch_range, classification)
            logger.info(f"[RESOLVER] Background refresh for {key} completed")
        except ResolutionError as e:
            # Allow the next stale read to retry immediately
            self._last_refresh.pop(key, None)
            logger.warning(f"[RESOLVER] Background refresh for {key} failed: {e.message}")
        except Exception as e:
            self._last_refresh.pop(key, None)
            logger.exception(f"[RESOLVER] Background refresh for {key} crashed")
            capture_exception(e, extra={"operation": "background_refresh", "key": list(key)})

    # =========================================================================
    # RESULT + VALIDATION
    # =========================================================================

    @staticmethod
    def _fetch_range(date_range: DateRange, today: date) -> Tuple[DateRange, bool]:
        """Cap the upstream range at today. Never advanced, only shortened."""
        if date_range.end > today:
            return DateRange(start=date_range.start, end=today), True
        return date_range, False

    def _result(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
        success: bool,
        data: Optional[ReportData],
        source: str,
        expected: str,
        priority: List[str],
        reason: Optional[str] = None,
        potential_bypass: bool = False,
        cache_age_seconds: Optional[int] = None,
    ) -> ResolutionResult:
        policy = "force-fresh" if request.force_fresh and classification.is_cacheable else _CACHE_POLICIES[classification.kind]
        return ResolutionResult(
            success=success,
            data=data,
            debug=DebugInfo(
                source=source,
                cache_policy=policy,
                reason=reason,
                period_kind=classification.kind,
                period_id=classification.canonical_period_id,
                data_source_priority=priority,
                cache_age_seconds=cache_age_seconds,
            ),
            validation=ValidationRecord(
                expected_source=expected,
                actual_source=source,
                is_consistent=expected == source,
                potential_cache_bypassed=potential_bypass,
            ),
        )

    def _historical_failure(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
        reason: str,
    ) -> ResolutionResult:
        return self._result(
            request,
            classification,
            success=False,
            data=None,
            source=DATABASE,
            expected=DATABASE,
            priority=["database"],
            reason=reason,
        )

    def _no_historical_data(
        self,
        request: FetchRequest,
        classification: PeriodClassification,
    ) -> ResolutionResult:
        """Successful empty result, distinct from real zero-spend data."""
        return self._result(
            request,
            classification,
            success=True,
            data=ReportData(data_available=False),
            source=DATABASE,
            expected=DATABASE,
            priority=["database"],
            reason=NO_HISTORICAL_DATA,
        )

    @staticmethod
    def _log_validation(
        request: FetchRequest,
        classification: PeriodClassification,
        result: ResolutionResult,
    ) -> None:
        validation = result.validation
        if not validation.is_consistent:
            logger.warning(
                f"[RESOLVER] Source inconsistency for {request.client_id}/{request.platform.value} "
                f"{classification.kind}: expected={validation.expected_source} "
                f"actual={validation.actual_source}"
            )
        if validation.potential_cache_bypassed:
            logger.info(
                f"[RESOLVER] Cache bypassed by force_fresh for {request.client_id}/"
                f"{classification.canonical_period_id}"
            )
        logger.info(
            f"[RESOLVER] Done client={request.client_id} source={result.debug.source} "
            f"success={result.success} {result.debug.response_time_ms}ms"
        )
