"""
Domain Services
"""
from app.domain.services.deposit_service import DepositService
from app.domain.services.gateway import PaymentGateway, StripeGateway
from app.domain.services.health_service import HealthService
from app.domain.services.notification_service import Notifier, build_notifier
from app.domain.services.reauthorization_service import ReauthorizationScheduler
from app.domain.services.retry_queue import RetryQueue, RetryQueueProcessor
from app.domain.services.webhook_service import WebhookService

__all__ = [
    "DepositService",
    "PaymentGateway",
    "StripeGateway",
    "HealthService",
    "Notifier",
    "build_notifier",
    "ReauthorizationScheduler",
    "RetryQueue",
    "RetryQueueProcessor",
    "WebhookService",
]
