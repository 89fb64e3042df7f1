"""
Database configuration and session management.

This module creates the SQLAlchemy engine from the configured database URL
and provides the session dependency for FastAPI path operations.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from CiviReportAPI.config import database_url
from CiviReportAPI.models import Base


def _create_engine(url: str):
    # SQLite sessions are used from the threadpool, not only the creating thread
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


# Create the SQLAlchemy engine
engine = _create_engine(database_url())

# Create a configured "Session" class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Dependency for getting the database session
def get_db():
    """
    Get a database session.

    This function is designed to be used as a FastAPI dependency. It yields a
    database session and ensures it is closed after the request is processed.

    Yields:
        sqlalchemy.orm.Session: A database session.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


__all__ = ["Base", "engine", "SessionLocal", "get_db"]
