"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory and exposes the
    FastAPI dependency for database access.

WHY:
    - Ingestion routes, the delivery worker and the ARQ cron job all share
      one session factory.
    - The delivery pipeline relies on the store for mutual exclusion
      (conditional UPDATEs, ON CONFLICT upserts), so every caller must go
      through the same engine configuration.

USAGE:
    # FastAPI
    from capi_relay.database import get_db

    # Workers and scripts
    from capi_relay.database import get_sync_session

    with get_sync_session() as db:
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - capi_relay/services/event_store.py (consumer of these sessions)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from capi_relay.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure .env is loaded or env var is exported."
        )

    if database_url.startswith("postgres://"):
        # Heroku-style URL
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# Connection pool configuration:
# - pool_recycle: Recreate connections after 1 hour to prevent stale connections
# - pool_pre_ping: Check connection health before use
#
# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in capi_relay.models to ensure a single registry across the app
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance

    Example:
        @router.post("/events/add-to-cart")
        def add_to_cart(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    WHAT:
        Creates a session with automatic cleanup.

    WHY:
        For the ARQ cron job and scripts where FastAPI dependency
        injection isn't available.

    Example:
        with get_sync_session() as db:
            run_delivery_batch(db, ...)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# UPSERT SUPPORT
# =============================================================================

def dialect_insert(db: Session, model):
    """Return an INSERT construct that supports ON CONFLICT for the session's backend.

    WHAT:
        PostgreSQL and SQLite both expose `on_conflict_do_update`, but through
        dialect-specific `insert()` constructs.

    WHY:
        The event store and touchpoint resolver rely on single-statement
        upserts so concurrent ingestion of the same key is safe.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Upserts are not supported on dialect {dialect!r}")
    return insert(model)
