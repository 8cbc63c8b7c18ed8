"""
Database session management with connection pooling.

Provides the FastAPI dependency for request-scoped sessions and
unit_of_work(), the transaction boundary used by services, jobs and any
caller that must colocate a quota consumption with its protected write.

Usage:
    from stokreal.database.session import get_db_session, unit_of_work

    @router.get("/status")
    def status(db: Session = Depends(get_db_session)):
        ...

    with unit_of_work() as session:
        service = EntitlementService(session)
        service.consume_feature(user_id, "product_slot", "free")
        session.add(product)
"""

import os
import logging
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine = None
_SessionLocal = None


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Converts postgres:// URLs to postgresql:// (SQLAlchemy requires the latter).
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine():
    """
    Get or create the database engine singleton.

    - pool_size: 5 connections
    - max_overflow: 10 additional connections under load
    - pool_pre_ping: verify connections before use
    """
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
            _engine = create_engine(
                database_url,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
            logger.info("Database engine created with connection pooling")
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=engine
        )
    return _SessionLocal


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    One session per request, always closed. Raises HTTP 503 if the
    database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
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
def unit_of_work(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    One transaction: commit on success, roll back on any exception.

    Row locks taken inside (SELECT ... FOR UPDATE) are released when the
    block exits either way, so a failed or cancelled caller never leaves a
    counter half-updated.
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
