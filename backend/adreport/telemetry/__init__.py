"""
Telemetry Module
================

Observability for the resolution engine.

Components:
- sentry.py: Error tracking (API, worker, background refreshes)

Logging uses the stdlib `logging` module with a bracketed component tag in
every message ([RESOLVER], [LIVE_FETCH], [CACHE_STORE], ...).

Environment Variables:
- SENTRY_DSN: Sentry project DSN
"""

from adreport.telemetry.sentry import init_sentry, capture_exception

__all__ = [
    "init_sentry",
    "capture_exception",
]
