"""Database connection and session management."""

import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from paperforge.config import settings

logger = logging.getLogger(__name__)

# Resolve to an absolute path so every worker opens the same file
_db_path = settings.database_path.resolve()
DATABASE_URL = f"sqlite:///{_db_path}"

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},  # FastAPI runs sync endpoints in a threadpool
    echo=False,
)

# Session factory - creates new sessions on each call
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all database models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function to get database session.

    Yields:
        Database session

    Note: Services are responsible for calling commit() explicitly.
    This function only ensures proper session cleanup and rollback on exceptions.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """
    Create the data directory and all tables.
    Should be called on application startup.
    """
    # Models register themselves on Base when imported
    from paperforge.db import models  # noqa: F401

    _db_path.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database ready at {_db_path}")


def drop_db() -> None:
    """
    Drop all database tables.
    Use with caution - only for development/testing.
    """
    Base.metadata.drop_all(bind=engine)


__all__ = ["get_db", "init_db", "drop_db", "Base", "SessionLocal", "engine", "_db_path"]
