"""
SQLAlchemy Models for Database
==============================

Persistent record of a dispute case.

One row per case. Evidence collections, dispute points and the verdict are
stored as JSON documents on the row; there are no child tables, so every
write is a partial update of a single row.

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import uuid
from sqlalchemy import Column, DateTime, Index, JSON, String, Text
from sqlalchemy.orm import declarative_base

from ..schemas import utc_now

# Use JSON for cross-database compatibility (works with both PostgreSQL and SQLite)
# PostgreSQL will use native JSONB, SQLite will use TEXT with JSON serialization
JSONB = JSON

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class CaseRecord(Base):
    """Dispute case row"""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    share_code = Column(String(16), unique=True, nullable=False)

    plaintiff_id = Column(String(255), nullable=False, index=True)
    defendant_id = Column(String(255), nullable=True, index=True)

    category = Column(String(100), nullable=True)
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    plaintiff_summary = Column(Text, nullable=True)
    demands = Column(Text, nullable=True)
    evidence = Column(JSONB, default=list)  # plaintiff evidence

    defense_statement = Column(Text, nullable=True)
    defense_summary = Column(Text, nullable=True)
    defendant_evidence = Column(JSONB, default=list)

    plaintiff_rebuttal = Column(Text, nullable=True)
    plaintiff_rebuttal_evidence = Column(JSONB, default=list)
    defendant_rebuttal = Column(Text, nullable=True)
    defendant_rebuttal_evidence = Column(JSONB, default=list)

    dispute_points = Column(JSONB, default=list)
    last_analyzed_hash = Column(String(64), nullable=True)

    judge_persona = Column(String(50), nullable=True)
    status = Column(String(50), nullable=False, default="drafting")
    verdict = Column(JSONB, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index("ix_cases_updated_at", "updated_at"),
    )
