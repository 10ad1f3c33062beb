"""Database engine and session configuration.

WHAT:
    Provides the SQLAlchemy engine, the session factory, a FastAPI
    dependency and a context manager for workers.

WHY:
    - Routers get a request-scoped session through `get_db()`.
    - arq jobs open their own session with `get_sync_session()`, so no
      session is ever shared between two units of work.

USAGE:
    from storelink.database import SessionLocal, get_db, get_sync_session

    with get_sync_session() as db:
        store = db.query(Store).filter(Store.uid == uid).first()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - storelink/routers/ (consumers of get_db)
    - storelink/workers/arq_worker.py (consumer of get_sync_session)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from storelink.utils.env import require_env


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = require_env("DATABASE_URL")

    # Heroku-style URLs are rejected by SQLAlchemy 1.4+
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

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


# =============================================================================
# FASTAPI DEPENDENCY
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for one request and close it afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGER (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, scripts).

    Example:
        with get_sync_session() as db:
            stores = db.query(Store).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
