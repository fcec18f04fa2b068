"""
Engine and session wiring for the capacity engine.

Entitlement and admin routes receive a request-scoped session through
get_db_session; the reconciliation job drives get_db_session_sync. Both
share one pooled engine built from DATABASE_URL.

Usage:
    from capacity_engine.database.session import get_db_session

    @router.post("/trainers/{trainer_id}/consumers/{consumer_id}/allocate")
    async def allocate(trainer_id: str, consumer_id: str, db: Session = Depends(get_db_session)):
        return SlotAllocator(db).allocate(trainer_id, consumer_id).to_dict()
"""

import os
import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None


def normalize_database_url(database_url: str) -> str:
    """Rewrite a postgres:// URL to the postgresql:// scheme SQLAlchemy expects."""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def _get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")
    return normalize_database_url(database_url)


def get_engine():
    """
    Pooled engine shared by routes, the reconciliation job and scripts.

    Pool size and overflow come from DATABASE_POOL_SIZE and
    DATABASE_MAX_OVERFLOW (5 and 10 when unset). Allocation retries open
    a savepoint per attempt, so connections are held only for the
    length of one request.
    """
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
            pool_size = int(os.getenv("DATABASE_POOL_SIZE", "5"))
            max_overflow = int(os.getenv("DATABASE_MAX_OVERFLOW", "10"))
            _engine = create_engine(
                database_url,
                poolclass=QueuePool,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
            logger.info("Capacity database engine created", extra={
                "pool_size": pool_size,
                "max_overflow": max_overflow,
            })
        except ValueError as e:
            logger.error("Failed to create capacity database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
        )
    return _SessionLocal


async def get_db_session() -> Generator[Session, None, None]:
    """
    Request-scoped session for the capacity routes.

    Routes commit their own unit of work; anything left open is
    discarded on close. Answers 503 when DATABASE_URL is missing.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Capacity database not configured"
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Session for the reconciliation job and other non-request callers.

    Usage:
        db_gen = get_db_session_sync()
        db = next(db_gen)
        MaintenanceSweeper(db).run_reconciliation()
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
