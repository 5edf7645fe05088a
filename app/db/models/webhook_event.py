"""
Webhook Event Model - טבלת idempotency למניעת עיבוד כפול של אירועי gateway.

אירוע נרשם רק אחרי שהמעבר שלו בוצע commit; אירוע שנכשל לא נרשם ולכן
replay שלו יעובד מחדש.
"""
from sqlalchemy import Column, String, DateTime, Index

from app.db.database import Base


class WebhookEventRow(Base):
    """רשומת idempotency - אירוע שעובד בהצלחה"""

    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_webhook_events_processed_at", "processed_at"),
    )
