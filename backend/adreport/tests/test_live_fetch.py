"""Tests for the live fetch orchestrator.

WHAT:
    In-flight deduplication, cancellation isolation, time budgets,
    write-through and the no-negative-caching rule.

WHY:
    A dashboard opened by several users at once must trigger exactly one
    upstream call, and a failed or hung fetch must never leave an entry in
    the cache that later requests would serve.

REFERENCES:
    - adreport/services/live_fetch.py
"""

import asyncio
from unittest.mock import Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from adreport.exceptions import (
    ClientRateLimitError,
    FetchValidationError,
    LiveFetchTimeoutError,
    ProviderNotConnectedError,
    QuotaExhaustedError,
    UpstreamError,
)
from adreport.models import CacheTierEnum
from adreport.services.live_fetch import LiveFetchOrchestrator
from adreport.services.period_classifier import classify

from conftest import CURRENT_MONTH_RANGE, TODAY


MONTH = classify(CURRENT_MONTH_RANGE, TODAY)


class _BrokenDirectory:
    def __init__(self, error):
        self.error = error

    async def get_account_id(self, client_id, platform):
        raise self.error


class TestDeduplication:
    def test_concurrent_callers_share_one_upstream_call(self, orchestrator, meta_adapter):
        """WHAT: N concurrent fetches for one cold key -> one adapter call."""
        async def scenario():
            meta_adapter.gate = asyncio.Event()
            waiters = [
                asyncio.create_task(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))
                for _ in range(10)
            ]
            await asyncio.sleep(0)
            meta_adapter.gate.set()
            return await asyncio.gather(*waiters)

        results = asyncio.run(scenario())

        assert meta_adapter.calls == 1
        assert all(r == results[0] for r in results)
        assert not orchestrator.is_in_flight(orchestrator.fetch_key("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))

    def test_different_clients_are_not_deduplicated(self, orchestrator, meta_adapter):
        async def scenario():
            await asyncio.gather(
                orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH),
                orchestrator.fetch_live("client-2", "meta", CURRENT_MONTH_RANGE, MONTH),
            )

        asyncio.run(scenario())

        assert meta_adapter.calls == 2
        assert sorted(account for account, _ in meta_adapter.requested) == ["act_111", "act_222"]

    def test_cancelled_waiter_does_not_cancel_shared_fetch(self, orchestrator, meta_adapter, cache_store):
        """WHAT: Cancelling one caller leaves the shared fetch and write-through running.
        WHY: A user navigating away must not abort data other users wait for.
        """
        async def scenario():
            meta_adapter.gate = asyncio.Event()
            first = asyncio.create_task(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))
            second = asyncio.create_task(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))
            await asyncio.sleep(0)
            first.cancel()
            await asyncio.sleep(0)
            meta_adapter.gate.set()
            campaigns = await second
            with pytest.raises(asyncio.CancelledError):
                await first
            entry = await cache_store.get("client-1", "meta", "2025-09", "month")
            return campaigns, entry

        campaigns, entry = asyncio.run(scenario())

        assert meta_adapter.calls == 1
        assert len(campaigns) == 1
        assert entry is not None


class TestWriteThrough:
    def test_cacheable_fetch_is_written_with_issue_time(self, orchestrator, cache_store, clock):
        async def scenario():
            campaigns = await orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH)
            return campaigns, await cache_store.get("client-1", "meta", "2025-09", CacheTierEnum.month)

        campaigns, entry = asyncio.run(scenario())

        assert entry.last_updated == clock.now
        assert entry.snapshot.campaigns == campaigns
        assert entry.snapshot.stats.total_spend == 100.0

    def test_custom_range_is_never_cached(self, orchestrator, cache_store):
        custom_range = CURRENT_MONTH_RANGE.model_copy(update={"end": TODAY})
        custom = classify(custom_range, TODAY)

        async def scenario():
            await orchestrator.fetch_live("client-1", "meta", custom_range, custom)
            return await cache_store.list_entries()

        assert asyncio.run(scenario()) == []

    def test_platform_ratios_are_recomputed(self, orchestrator):
        campaigns = asyncio.run(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))

        assert campaigns[0].ctr == pytest.approx(2.0)
        assert campaigns[0].cpc == pytest.approx(0.5)
        assert campaigns[0].funnel.reservations == 4

    def test_cache_write_failure_still_returns_data(self, orchestrator):
        failing_store = Mock()

        async def broken_put(entry):
            raise RuntimeError("disk full")

        failing_store.put = broken_put
        orchestrator.cache_store = failing_store

        campaigns = asyncio.run(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))

        assert len(campaigns) == 1


class TestFailures:
    def test_upstream_error_leaves_cache_empty_and_is_retried(self, orchestrator, meta_adapter, cache_store):
        """WHAT: A rate-limited fetch raises, writes nothing, and the next call retries."""
        meta_adapter.errors = [QuotaExhaustedError("meta", message="User request limit reached")]

        async def scenario():
            with pytest.raises(UpstreamError) as exc_info:
                await orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH)
            empty = await cache_store.list_entries()
            campaigns = await orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH)
            return exc_info.value, empty, campaigns

        error, empty, campaigns = asyncio.run(scenario())

        assert error.code == "rate_limited"
        assert error.message == "User request limit reached"
        assert empty == []
        assert len(campaigns) == 1
        assert meta_adapter.calls == 2

    def test_timeout_raises_timeout_error_and_skips_cache(self, orchestrator, meta_adapter, cache_store):
        meta_adapter.delay = 5.0
        orchestrator.timeout_seconds = 0.05

        async def scenario():
            with pytest.raises(LiveFetchTimeoutError):
                await orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH)
            return await cache_store.list_entries()

        assert asyncio.run(scenario()) == []
        assert orchestrator.api_calls[-1]["success"] is False

    def test_unexpected_adapter_error_becomes_upstream_error(self, orchestrator, meta_adapter):
        meta_adapter.errors = [KeyError("campaign_id")]

        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))

        assert exc_info.value.code == "unexpected"

    def test_unconnected_client_raises(self, orchestrator, meta_adapter):
        with pytest.raises(ProviderNotConnectedError):
            asyncio.run(orchestrator.fetch_live("client-2", "google", CURRENT_MONTH_RANGE, MONTH))

    def test_unknown_platform_raises_validation_error(self, orchestrator):
        with pytest.raises(FetchValidationError):
            asyncio.run(orchestrator.fetch_live("client-1", "tiktok", CURRENT_MONTH_RANGE, MONTH))

    def test_account_lookup_failure_becomes_upstream_error(self, orchestrator, meta_adapter):
        """WHAT: A database error while finding the account id is a resolution error.
        WHY: Anything else escapes resolve() and turns into a 500.
        """
        orchestrator.accounts = _BrokenDirectory(
            OperationalError("SELECT clients.meta_ad_account_id", {}, Exception("database is locked"))
        )

        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))

        assert exc_info.value.code == "unexpected"
        assert "database is locked" in exc_info.value.message
        assert meta_adapter.calls == 0


class TestRateLimiting:
    def test_limit_exceeded_blocks_upstream_call(self, orchestrator, meta_adapter):
        limiter = Mock()
        limiter.check_and_record.side_effect = ClientRateLimitError(retry_after=30, client_id="client-1", platform="meta")
        orchestrator.rate_limiter = limiter

        with pytest.raises(ClientRateLimitError):
            asyncio.run(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))

        assert meta_adapter.calls == 0

    def test_limiter_bug_becomes_upstream_error(self, orchestrator, meta_adapter):
        limiter = Mock()
        limiter.check_and_record.side_effect = TypeError("unsupported operand")
        orchestrator.rate_limiter = limiter

        with pytest.raises(UpstreamError) as exc_info:
            asyncio.run(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))

        assert exc_info.value.code == "unexpected"
        assert meta_adapter.calls == 0

    def test_redis_outage_fails_open(self, orchestrator, meta_adapter):
        limiter = Mock()
        limiter.check_and_record.side_effect = RedisConnectionError("connection refused")
        orchestrator.rate_limiter = limiter

        campaigns = asyncio.run(orchestrator.fetch_live("client-1", "meta", CURRENT_MONTH_RANGE, MONTH))

        assert len(campaigns) == 1
        assert meta_adapter.calls == 1
