"""
Sentry Error Tracking
=====================

Exception capture for the reports API and the cache maintenance worker.

What gets reported:
- Crashed background refreshes (a stale entry kept being served)
- Historical or cache store failures the engine degraded around
- Unexpected adapter errors the orchestrator wrapped as "unexpected"

Expected upstream outcomes (rate limits, expired tokens) are NOT reported:
they are returned to the caller in debug.reason and logged as warnings.

Related files:
- adreport/main.py: init_sentry() on app creation
- adreport/workers/arq_worker.py: init_sentry() on worker startup
- adreport/services/resolution_engine.py, adreport/services/live_fetch.py: capture_exception()

Environment Variables:
- SENTRY_DSN: Project DSN; nothing is sent without it
- ENVIRONMENT: production, staging or development
- RELEASE_VERSION: Optional release tag
"""

from __future__ import annotations

import os
import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

# Context keys promoted to searchable tags; everything else stays an extra
_TAG_KEYS = ("operation", "client_id", "platform")


def init_sentry(dsn: Optional[str] = None) -> bool:
    """
    Initialize the Sentry SDK once per process.

    Returns:
        True when events will be sent, False without a DSN or when the
        SDK refused the configuration.
    """
    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] No DSN configured, error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=os.environ.get("RELEASE_VERSION"),
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                # [RESOLVER]/[LIVE_FETCH] warnings become breadcrumbs, errors become events
                LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.05,
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"[SENTRY] Initialization failed: {e}")
        return False

    logger.info(f"[SENTRY] Error tracking enabled ({environment})")
    return True


def capture_exception(exception: Exception, extra: Optional[Dict[str, Any]] = None) -> None:
    """
    Report a handled exception with resolution context.

    `operation`, `client_id` and `platform` in `extra` become tags so
    failures can be grouped per client or platform; other keys are extras.

    Example:
        capture_exception(e, extra={"operation": "background_refresh", "key": list(key)})
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                if key in _TAG_KEYS:
                    scope.set_tag(key, str(value))
                else:
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture {type(exception).__name__}: {e}")
