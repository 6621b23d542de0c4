"""FastAPI application entrypoint.

Configures CORS, includes the reports router, and exposes a healthcheck endpoint.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from .deps import get_settings

logging.basicConfig(level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

from . import state
from .routers import reports as reports_router
from .telemetry import init_sentry
from . import schemas

# Import models so table metadata is registered
from . import models  # noqa: F401


def create_app() -> FastAPI:
    settings = get_settings()

    if init_sentry(settings.SENTRY_DSN):
        logger.info("[STARTUP] Sentry error tracking enabled")

    app = FastAPI(
        title="adreport API",
        description="""
        Campaign reporting for Meta and Google Ads clients.

        Every report says where its numbers came from:
        - **cache-fresh / cache-stale**: current month or week snapshot
        - **database**: backfilled summaries for elapsed periods
        - **live-api**: fetched from the platform for this request
        """,
        version="1.0.0",
    )

    # BACKEND_CORS_ORIGINS can be a comma-separated list: "https://reports.example.com,http://localhost:3000"
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(reports_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Check Redis on startup. Rate limiting is disabled when it is down."""
        try:
            if state.redis_client is not None and state.redis_client.ping():
                logger.info("[STARTUP] Redis is healthy")
                return
        except Exception as e:
            logger.warning(f"[STARTUP] Redis ping failed: {e}")
        logger.warning(
            "[STARTUP] Redis unavailable - live fetches run without per-client rate limits. "
            f"REDIS_URL={settings.REDIS_URL}"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Let detached cache refreshes finish their write-through."""
        if state._engine is not None:
            await state._engine.wait_for_background_refreshes()

    return app


app = create_app()
