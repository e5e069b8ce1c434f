"""
Database Package - SQLAlchemy
=============================

Persistence for dispute cases (PostgreSQL in production, SQLite for dev/tests).
"""

from .models import Base, CaseRecord, generate_uuid
from .session import get_db_session, get_engine, init_db, reset_engine

__all__ = [
    # Base
    "Base", "generate_uuid",
    # Cases
    "CaseRecord",
    # Session
    "get_db_session", "get_engine", "init_db", "reset_engine",
]
