"""
Deposit Model - one row per security deposit.

Queryable fields are columns; the full record (histories, action_required,
metadata) is stored as a JSON document. ``version`` drives optimistic
concurrency: every write is ``UPDATE ... WHERE id = :id AND version = :seen``.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from app.db.database import Base


class DepositRow(Base):
    """Persisted Deposit"""

    __tablename__ = "deposits"

    id = Column(String(64), primary_key=True)
    customer_id = Column(String(255), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    currency = Column(String(3), nullable=False)
    hold_amount = Column(Integer, nullable=False)
    active_authorization_id = Column(String(255), nullable=True)
    last_authorization_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    document = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_deposits_status_last_auth", "status", "last_authorization_at"),
        Index("ix_deposits_active_authorization_id", "active_authorization_id"),
    )
