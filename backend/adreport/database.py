"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory used by the cache
    store, the historical summary store and the scheduled jobs.

WHY:
    - Store adapters receive a session factory, never a global session
    - Blocking SQL runs in worker threads (asyncio.to_thread) from the engine

USAGE:
    from adreport.database import SessionLocal

    store = HistoricalAggregateStore(SessionLocal)

REFERENCES:
    - adreport/services/cache_store.py (SqlCacheBackend)
    - adreport/services/historical_store.py
"""

import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string (PostgreSQL in production, SQLite locally)

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Local .env for developers; exported variables always win
        load_dotenv(override=False)
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in adreport.models to ensure a single registry
from .models import Base  # noqa: E402,F401
