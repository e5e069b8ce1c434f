"""
Database Session Management
===========================

Engine and session handling with SQLAlchemy.

The engine is built lazily from DATABASE_URL and rebuilt when the URL
changes, so tests can point at a temporary SQLite file at runtime.
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from .models import Base

logger = logging.getLogger(__name__)

_engine = None
_engine_url = None

# Bound on first use, see get_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def _current_database_url() -> str:
    return os.environ.get("DATABASE_URL", "sqlite:///./court.db")


def _sql_echo() -> bool:
    return os.environ.get("SQL_ECHO", "false").lower() == "true"


def _create_engine_for_url(database_url: str):
    if database_url.startswith("sqlite"):
        # Store calls run in worker threads
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=_sql_echo(),
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        connect_args={
            "connect_timeout": int(os.environ.get("DB_CONNECT_TIMEOUT", "5")),
        },
        echo=_sql_echo(),
    )


def get_engine():
    """Get the SQLAlchemy engine for the current DATABASE_URL"""
    global _engine, _engine_url
    database_url = _current_database_url()
    if _engine is None or _engine_url != database_url:
        if _engine is not None:
            _engine.dispose()
        _engine = _create_engine_for_url(database_url)
        _engine_url = database_url
        SessionLocal.configure(bind=_engine)
        logger.info(f"Database engine created ({_engine.dialect.name})")
    return _engine


def reset_engine():
    """Reset engine/sessionmaker (primarily for tests)."""
    global _engine, _engine_url
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_url = None
    SessionLocal.configure(bind=None)


def init_db():
    """Create tables that do not exist yet"""
    engine = get_engine()
    Base.metadata.create_all(bind=engine)


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Transactional session: commit on success, rollback on error.

    Usage:
        with get_db_session() as db:
            db.get(CaseRecord, case_id)
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
