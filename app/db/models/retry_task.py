"""
Retry Task Model - durable queue of deferred work.

``live_dedup_key`` mirrors ``dedup_key`` while the task is live and is NULL
once it is dead-lettered; the unique constraint therefore allows at most one
live task per key while keeping dead letters for inspection.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, Index

from app.db.database import Base


class RetryTaskRow(Base):
    """Pending or dead-lettered retry task"""

    __tablename__ = "retry_tasks"

    id = Column(String(64), primary_key=True)
    kind = Column(String(32), nullable=False)
    dedup_key = Column(String(255), nullable=False, index=True)
    live_dedup_key = Column(String(255), nullable=True, unique=True)
    payload = Column(JSON, nullable=False)

    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=False)
    dead_letter = Column(Boolean, nullable=False, default=False)

    # Error tracking
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_retry_tasks_due", "dead_letter", "next_attempt_at"),
    )
