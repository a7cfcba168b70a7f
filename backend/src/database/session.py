"""
Database engine and session management.

Provides the FastAPI dependency used by the subscription and webhook routes
and a context-managed session for CLI jobs and the scheduler.

Usage:
    from src.database.session import get_db_session

    @router.get("/api/subscription")
    async def status(db: Session = Depends(get_db_session)):
        ...

    from src.database.session import session_scope

    with session_scope() as db:
        ...
"""

import os
import logging
from contextlib import contextmanager
from typing import AsyncGenerator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine = None
_SessionLocal = None


class DatabaseNotConfiguredError(RuntimeError):
    """Raised when DATABASE_URL is missing."""


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Converts the legacy postgres:// scheme to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise DatabaseNotConfiguredError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine():
    """
    Get or create the database engine singleton.

    Server databases get a bounded connection pool with pre-ping; SQLite
    (local development) uses the driver defaults.
    """
    global _engine
    if _engine is None:
        database_url = _get_database_url()
        if database_url.startswith("sqlite"):
            _engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
            )
        else:
            _engine = create_engine(
                database_url,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
        logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
        )
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the engine and forget the session factory (for tests only)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


async def get_db_session() -> AsyncGenerator[Session, None]:
    """
    FastAPI dependency for database sessions.

    Raises HTTP 503 if the database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except DatabaseNotConfiguredError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Session for non-request contexts (jobs, scheduler).

    Services commit their own units of work; anything left uncommitted
    when the block raises is rolled back.
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
