"""
Composition root - builds every component once and wires them explicitly.

Nothing in the core looks up a repository or a gateway globally; the FastAPI
app, the Celery tasks and the in-process loops each build a Container and
pass its parts into constructors.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.core.config import Settings
from app.core.logging import get_logger
from app.core.retry_policy import RetryPolicy
from app.db.repositories.base import Repositories
from app.db.repositories.factory import Storage, build_storage
from app.domain.models import RetryTaskKind
from app.domain.services.deposit_service import DepositService
from app.domain.services.gateway import PaymentGateway, StripeGateway
from app.domain.services.health_service import HealthService
from app.domain.services.notification_service import Notifier, build_notifier
from app.domain.services.reauthorization_service import ReauthorizationScheduler
from app.domain.services.retry_queue import RetryQueue, RetryQueueProcessor
from app.domain.services.webhook_service import WebhookService

logger = get_logger(__name__)


@dataclass
class Container:
    settings: Settings
    storage: Storage
    gateway: PaymentGateway
    notifier: Notifier
    retry_queue: RetryQueue
    deposits: DepositService
    scheduler: ReauthorizationScheduler
    webhooks: WebhookService
    retry_processor: RetryQueueProcessor
    health: HealthService

    @property
    def repositories(self) -> Repositories:
        return self.storage.repositories

    def request_stop(self) -> None:
        self.scheduler.request_stop()
        self.retry_processor.request_stop()

    async def close(self) -> None:
        await self.storage.close()


def wire(
    settings: Settings,
    storage: Storage,
    gateway: PaymentGateway,
    *,
    policy: Optional[RetryPolicy] = None,
    notifier: Optional[Notifier] = None,
) -> Container:
    repos = storage.repositories
    notifier = notifier or build_notifier(settings)
    retry_queue = RetryQueue(repos.retry_tasks, policy or RetryPolicy.from_settings(settings))
    deposits = DepositService.from_settings(repos.deposits, gateway, settings, notifier=notifier)
    scheduler = ReauthorizationScheduler.from_settings(deposits, retry_queue, repos.job_runs, settings)
    webhooks = WebhookService.from_settings(deposits, repos.webhook_events, retry_queue, settings)
    retry_processor = RetryQueueProcessor(
        retry_queue,
        repos.job_runs,
        {
            RetryTaskKind.WEBHOOK_EVENT: webhooks.retry_task,
            RetryTaskKind.REAUTHORIZATION: scheduler.retry_task,
        },
        batch_size=settings.RETRY_BATCH_SIZE,
        lease_seconds=settings.RETRY_LEASE_SECONDS,
    )
    return Container(
        settings=settings,
        storage=storage,
        gateway=gateway,
        notifier=notifier,
        retry_queue=retry_queue,
        deposits=deposits,
        scheduler=scheduler,
        webhooks=webhooks,
        retry_processor=retry_processor,
        health=HealthService(repos.retry_tasks, repos.job_runs),
    )


async def build_container(
    settings: Settings,
    *,
    gateway: Optional[PaymentGateway] = None,
    storage: Optional[Storage] = None,
    notifier: Optional[Notifier] = None,
) -> Container:
    storage = storage or await build_storage(settings)
    gateway = gateway or StripeGateway.from_settings(settings)
    container = wire(settings, storage, gateway, notifier=notifier)
    logger.info(
        "Container built",
        extra_data={"storage_backend": settings.STORAGE_BACKEND, "gateway": type(gateway).__name__},
    )
    return container
