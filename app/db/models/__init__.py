"""
Database Models
"""
from app.db.models.deposit import DepositRow
from app.db.models.retry_task import RetryTaskRow
from app.db.models.webhook_event import WebhookEventRow
from app.db.models.job_run import JobRunRow

__all__ = [
    "DepositRow",
    "RetryTaskRow",
    "WebhookEventRow",
    "JobRunRow",
]
