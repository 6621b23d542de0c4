"""Live fetch orchestrator.

WHAT:
    Calls the platform capability for a (client, platform, date range),
    normalizes the rows, and writes the snapshot through to the tiered
    cache when the period is cacheable.

WHY:
    - Upstream APIs hang. Every fetch runs under a wall-clock budget and
      raises LiveFetchTimeoutError (distinct from UpstreamError) when it
      elapses.
    - Failures never touch the cache: no negative caching, so the next
      request retries live instead of serving a poisoned empty entry.
    - Thundering herd on a cold key: exactly one upstream call per
      (client_id, platform, period_id) is outstanding. Concurrent callers
      await the same shared task.
    - A caller that gives up (navigates away) cancels only its own wait.
      The shared task keeps running for the other waiters and for the
      cache write-through (asyncio.shield).

FLOW:
    fetch_live()
      └─ shared task per key (_in_flight)
           ├─ account lookup (AccountDirectory)
           ├─ per-client rate limit (ClientRateLimiter, Redis)
           ├─ adapter.fetch_insights() under asyncio.wait_for(budget)
           ├─ adapter.normalize() per row
           └─ cache put (compare-and-swap on last_updated) if cacheable

REFERENCES:
    - adreport/services/platform_adapters.py
    - adreport/services/cache_store.py
    - adreport/services/resolution_engine.py (consumer)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from adreport.exceptions import (
    FetchValidationError,
    LiveFetchTimeoutError,
    ResolutionError,
    UpstreamError,
)
from adreport.models import PlatformEnum, SourceOfTruthEnum
from adreport.schemas import CampaignMetrics, DateRange
from adreport.services.cache_store import CacheEntry, TieredCacheStore
from adreport.services.metric_normalizer import build_report
from adreport.services.period_classifier import PeriodClassification
from adreport.services.platform_adapters import PlatformAdapter
from adreport.services.rate_limiter import ClientRateLimiter
from adreport.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

FetchKey = Tuple[str, str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _platform_value(platform) -> str:
    return str(getattr(platform, "value", platform))


class LiveFetchOrchestrator:
    """Single entry point for live platform fetches.

    USAGE:
        orchestrator = LiveFetchOrchestrator(
            adapters={"meta": MetaPlatformAdapter(...), "google": GooglePlatformAdapter(...)},
            cache_store=TieredCacheStore(SqlCacheBackend(SessionLocal)),
            accounts=SqlAccountDirectory(SessionLocal),
        )
        campaigns = await orchestrator.fetch_live("client-1", "meta", date_range, classification)
    """

    def __init__(
        self,
        adapters: Dict[str, PlatformAdapter],
        cache_store: TieredCacheStore,
        accounts: Any,
        rate_limiter: Optional[ClientRateLimiter] = None,
        timeout_seconds: float = 30.0,
        store_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.adapters = {_platform_value(p): a for p, a in adapters.items()}
        self.cache_store = cache_store
        self.accounts = accounts
        self.rate_limiter = rate_limiter
        self.timeout_seconds = timeout_seconds
        self.store_timeout_seconds = store_timeout_seconds
        self._clock = clock

        self._in_flight: Dict[FetchKey, asyncio.Task] = {}

        # Recent upstream calls for debugging (bounded)
        self.api_calls: Deque[Dict[str, Any]] = deque(maxlen=200)

    # --- Keys -----------------------------------------------------------
    @staticmethod
    def fetch_key(
        client_id: str,
        platform,
        date_range: DateRange,
        classification: PeriodClassification,
    ) -> FetchKey:
        """Dedup key: the canonical period id, or the exact range when not cacheable."""
        period = classification.canonical_period_id or str(date_range)
        return (str(client_id), _platform_value(platform), period)

    def supports(self, platform) -> bool:
        return _platform_value(platform) in self.adapters

    def is_in_flight(self, key: FetchKey) -> bool:
        return key in self._in_flight

    def _adapter_for(self, platform) -> PlatformAdapter:
        adapter = self.adapters.get(_platform_value(platform))
        if adapter is None:
            raise FetchValidationError(f"Unsupported platform: {_platform_value(platform)}")
        return adapter

    # --- Audit ----------------------------------------------------------
    def _log_api_call(
        self,
        client_id: str,
        platform: str,
        success: bool,
        latency_ms: int,
        error: Optional[str] = None,
    ) -> None:
        call = {
            "client_id": client_id,
            "platform": platform,
            "endpoint": "fetch_insights",
            "success": success,
            "latency_ms": latency_ms,
            "timestamp": _utcnow().isoformat(),
        }
        if error:
            call["error"] = error
        self.api_calls.append(call)

        log_fn = logger.info if success else logger.warning
        log_fn(
            f"[LIVE_FETCH] {platform}.fetch_insights "
            f"{'OK' if success else 'FAIL'} "
            f"({latency_ms}ms) client={client_id}"
            + (f" error={error}" if error else "")
        )

    # --- Public API -----------------------------------------------------
    async def fetch_live(
        self,
        client_id: str,
        platform,
        date_range: DateRange,
        classification: PeriodClassification,
    ) -> List[CampaignMetrics]:
        """Fetch, normalize and (if cacheable) write through.

        Concurrent calls for the same key share one upstream request.
        Cancelling this coroutine does not cancel the shared fetch.

        Raises:
            LiveFetchTimeoutError: Budget elapsed
            UpstreamError: Platform returned an error
            ProviderNotConnectedError: Client has no account on the platform
            ClientRateLimitError: Per-client limit reached
        """
        adapter = self._adapter_for(platform)
        key = self.fetch_key(client_id, platform, date_range, classification)

        # No await between lookup and registration: first caller wins the key
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._run_fetch(adapter, str(client_id), date_range, classification)
            )
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
            logger.info(f"[LIVE_FETCH] Started fetch {key}")
        else:
            logger.info(f"[LIVE_FETCH] Joining in-flight fetch {key}")

        return await asyncio.shield(task)

    def _release(self, key: FetchKey, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Mark the outcome retrieved even if every waiter cancelled
        if not task.cancelled():
            task.exception()

    async def wait_for_in_flight(self) -> None:
        """Wait until every shared fetch settled (tests and shutdown)."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # --- Shared task body -----------------------------------------------
    async def _run_fetch(
        self,
        adapter: PlatformAdapter,
        client_id: str,
        date_range: DateRange,
        classification: PeriodClassification,
    ) -> List[CampaignMetrics]:
        platform = adapter.platform.value

        try:
            account_id = await asyncio.wait_for(
                self.accounts.get_account_id(client_id, platform),
                timeout=self.store_timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ResolutionError(
                f"Account lookup for client {client_id} timed out after {self.store_timeout_seconds:g}s",
                platform,
            ) from None
        except ResolutionError:
            raise
        except Exception as e:
            logger.exception(f"[LIVE_FETCH] Account lookup failed for client {client_id}")
            capture_exception(e, extra={"operation": "account_lookup", "client_id": client_id, "platform": platform})
            raise UpstreamError("unexpected", f"Account lookup failed: {e}", platform=platform) from e
        await self._check_rate_limit(client_id, platform)

        # The snapshot is stamped with the time the upstream request was issued
        issued_at = self._clock()
        started = time.monotonic()

        try:
            raw_rows = await asyncio.wait_for(
                adapter.fetch_insights(account_id, date_range),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            latency_ms = int((time.monotonic() - started) * 1000)
            error = LiveFetchTimeoutError(platform, self.timeout_seconds)
            self._log_api_call(client_id, platform, False, latency_ms, error.message)
            raise error from None
        except ResolutionError as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            self._log_api_call(client_id, platform, False, latency_ms, e.message)
            raise
        except Exception as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            self._log_api_call(client_id, platform, False, latency_ms, str(e))
            logger.exception(f"[LIVE_FETCH] Unexpected error fetching {platform} insights")
            capture_exception(e, extra={"operation": "live_fetch", "client_id": client_id, "platform": platform})
            raise UpstreamError("unexpected", f"Failed to fetch insights: {e}", platform=platform) from e

        latency_ms = int((time.monotonic() - started) * 1000)
        self._log_api_call(client_id, platform, True, latency_ms)

        campaigns = [adapter.normalize(row) for row in raw_rows]

        if classification.is_cacheable:
            await self._write_through(client_id, adapter.platform, classification, campaigns, issued_at)

        return campaigns

    async def _check_rate_limit(self, client_id: str, platform: str) -> None:
        if self.rate_limiter is None:
            return
        try:
            await asyncio.to_thread(self.rate_limiter.check_and_record, client_id, platform)
        except RedisError as e:
            # Limiter unavailable: fail open, the platform quota still applies
            logger.warning(f"[LIVE_FETCH] Rate limiter unavailable, continuing without it: {e}")
        except ResolutionError:
            raise
        except Exception as e:
            logger.exception(f"[LIVE_FETCH] Rate limit check failed for client {client_id}")
            capture_exception(e, extra={"operation": "rate_limit_check", "client_id": client_id, "platform": platform})
            raise UpstreamError("unexpected", f"Rate limit check failed: {e}", platform=platform) from e

    async def _write_through(
        self,
        client_id: str,
        platform: PlatformEnum,
        classification: PeriodClassification,
        campaigns: List[CampaignMetrics],
        issued_at: datetime,
    ) -> None:
        entry = CacheEntry(
            client_id=client_id,
            platform=platform,
            period_id=classification.canonical_period_id,
            tier=classification.cache_tier,
            snapshot=build_report(campaigns),
            last_updated=issued_at,
            source_of_truth=SourceOfTruthEnum.live_api,
        )
        try:
            await asyncio.wait_for(self.cache_store.put(entry), timeout=self.store_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"[LIVE_FETCH] Cache write-through timed out for {entry.key}; "
                f"serving fresh data uncached"
            )
        except Exception as e:
            logger.error(f"[LIVE_FETCH] Cache write-through failed for {entry.key}: {e}")
            capture_exception(e, extra={"operation": "cache_write_through", "key": list(entry.key)})
