"""
Application State
=================

Process-wide state shared across requests and scheduled jobs.

WHY this exists:
- The in-flight fetch registry and the background refresh cooldowns live on
  the ResolutionEngine instance; a per-request engine would lose both and
  every concurrent dashboard load would hit the platform APIs separately
- Redis connection pool should be shared to avoid connection overhead

WHAT it stores:
- redis_pool / redis_client: Shared Redis connection (per-client rate limiting)
- the ResolutionEngine singleton (built lazily by get_resolution_engine())

WHERE it's used:
- adreport/main.py: Logs Redis health on startup
- adreport/routers/reports.py: Depends on get_resolution_engine()
- adreport/workers/arq_worker.py: Builds its own engine per worker process
"""

import logging
from datetime import timedelta
from typing import Optional

from redis import Redis, ConnectionPool

from adreport.database import SessionLocal
from adreport.deps import Settings, get_settings
from adreport.services.account_directory import SqlAccountDirectory
from adreport.services.cache_store import SqlCacheBackend, TieredCacheStore
from adreport.services.historical_store import HistoricalAggregateStore
from adreport.services.live_fetch import LiveFetchOrchestrator
from adreport.services.meta_ads_client import MetaAdsClient
from adreport.services.platform_adapters import GooglePlatformAdapter, MetaPlatformAdapter
from adreport.services.rate_limiter import ClientRateLimiter
from adreport.services.resolution_engine import ResolutionEngine

logger = logging.getLogger(__name__)

# Shared Redis connection pool - reused across all requests
# Note: ARQ worker manages its own Redis connection for job queuing
redis_pool: ConnectionPool | None = None
redis_client: Redis | None = None

try:
    settings = get_settings()

    redis_pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=20,
        decode_responses=False,
    )
    redis_client = Redis(connection_pool=redis_pool)
    logger.info("[STATE] Shared Redis connection pool initialized (max_connections=20)")
except Exception as e:
    logger.error(f"[STATE] Failed to initialize Redis: {e}")
    logger.warning("[STATE] App will start without per-client rate limiting until Redis is configured")
    # Don't raise - the limiter is disabled without a client

_engine: Optional[ResolutionEngine] = None


def _meta_client_factory(settings: Settings):
    if not settings.META_ACCESS_TOKEN:
        return None

    def factory() -> MetaAdsClient:
        return MetaAdsClient(
            access_token=settings.META_ACCESS_TOKEN,
            app_id=settings.META_APP_ID,
            app_secret=settings.META_APP_SECRET,
            timeout=settings.LIVE_FETCH_TIMEOUT_SECONDS,
        )

    return factory


def build_resolution_engine(
    settings: Optional[Settings] = None,
    session_factory=SessionLocal,
    redis: Optional[Redis] = None,
) -> ResolutionEngine:
    """Wire stores, adapters and the orchestrator into one engine.

    Platform clients are created lazily on first fetch, so a missing Meta
    token or Google credential only fails requests for that platform.
    """
    settings = settings or get_settings()

    cache_store = TieredCacheStore(
        SqlCacheBackend(session_factory),
        ttl=timedelta(hours=settings.CACHE_TTL_HOURS),
    )
    orchestrator = LiveFetchOrchestrator(
        adapters={
            "meta": MetaPlatformAdapter(client_factory=_meta_client_factory(settings)),
            "google": GooglePlatformAdapter(timeout=settings.LIVE_FETCH_TIMEOUT_SECONDS),
        },
        cache_store=cache_store,
        accounts=SqlAccountDirectory(session_factory),
        rate_limiter=ClientRateLimiter(redis) if redis is not None else None,
        timeout_seconds=settings.LIVE_FETCH_TIMEOUT_SECONDS,
        store_timeout_seconds=settings.STORE_TIMEOUT_SECONDS,
    )
    engine = ResolutionEngine(
        cache_store=cache_store,
        historical_store=HistoricalAggregateStore(session_factory),
        orchestrator=orchestrator,
        report_timezone=settings.REPORT_TIMEZONE,
        store_timeout_seconds=settings.STORE_TIMEOUT_SECONDS,
        refresh_cooldown_seconds=settings.BACKGROUND_REFRESH_COOLDOWN_SECONDS,
        all_time_months=settings.ALL_TIME_MONTHS,
    )
    logger.info(
        f"[STATE] Resolution engine ready (ttl={settings.CACHE_TTL_HOURS:g}h, "
        f"live_timeout={settings.LIVE_FETCH_TIMEOUT_SECONDS:g}s, tz={settings.REPORT_TIMEZONE})"
    )
    return engine


def get_resolution_engine() -> ResolutionEngine:
    """FastAPI dependency: the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = build_resolution_engine(redis=redis_client)
    return _engine
