"""
Notification Service - operator notifications about deposit lifecycle events.

DepositService emits one DepositNotification per significant transition
(authorized, requires_action, failed, captured, released, refunded,
reauthorized, reauthorization_failed). Delivery is best effort: a failing
channel is logged and never fails the deposit operation.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.logging import get_logger
from app.domain.models import utcnow

logger = get_logger(__name__)

NOTIFY_AUTHORIZED = "deposit.authorized"
NOTIFY_REQUIRES_ACTION = "deposit.requires_action"
NOTIFY_PROCESSING = "deposit.processing"
NOTIFY_FAILED = "deposit.authorization_failed"
NOTIFY_CAPTURED = "deposit.captured"
NOTIFY_RELEASED = "deposit.released"
NOTIFY_REFUNDED = "deposit.refunded"
NOTIFY_REAUTHORIZED = "deposit.reauthorized"
NOTIFY_REAUTHORIZATION_FAILED = "deposit.reauthorization_failed"


class DepositNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    deposit_id: str
    status: str
    message: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class Notifier(ABC):
    @abstractmethod
    async def notify(self, notification: DepositNotification) -> bool:
        """Deliver ``notification``; return whether the channel accepted it"""


class LogNotifier(Notifier):
    """Writes every notification as a structured log line"""

    async def notify(self, notification: DepositNotification) -> bool:
        logger.info(
            "Deposit notification",
            extra_data=notification.model_dump(mode="json"),
        )
        return True


class WebhookNotifier(Notifier):
    """
    POSTs the notification as JSON to an operator endpoint.

    Calls go through a dedicated circuit breaker so a dead endpoint does not
    slow down every deposit operation.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            "notification-webhook",
            CircuitBreakerConfig(failure_threshold=3, timeout_seconds=60.0),
        )

    async def _post(self, client: httpx.AsyncClient, body: dict[str, Any]) -> httpx.Response:
        return await client.post(self.url, json=body, timeout=self.timeout_seconds)

    async def notify(self, notification: DepositNotification) -> bool:
        body = notification.model_dump(mode="json")

        async def _send() -> bool:
            if self._client is not None:
                response = await self._post(self._client, body)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, body)
            response.raise_for_status()
            return True

        try:
            return await self._circuit_breaker.execute(_send)
        except Exception as e:
            logger.error(
                "Error sending deposit notification",
                extra_data={
                    "url": self.url,
                    "type": notification.type,
                    "deposit_id": notification.deposit_id,
                    "error": str(e),
                },
            )
            return False


class CompositeNotifier(Notifier):
    """Fans out to every channel; succeeds when at least one accepted"""

    def __init__(self, notifiers: Sequence[Notifier]):
        self.notifiers = list(notifiers)

    async def notify(self, notification: DepositNotification) -> bool:
        delivered = False
        for notifier in self.notifiers:
            try:
                delivered = await notifier.notify(notification) or delivered
            except Exception as e:
                logger.error(
                    "Notifier raised",
                    extra_data={"notifier": type(notifier).__name__, "type": notification.type, "error": str(e)},
                )
        return delivered


def build_notifier(settings) -> Notifier:
    notifiers: list[Notifier] = [LogNotifier()]
    if settings.NOTIFICATION_WEBHOOK_URL:
        notifiers.append(WebhookNotifier(
            settings.NOTIFICATION_WEBHOOK_URL,
            timeout_seconds=settings.NOTIFICATION_TIMEOUT_SECONDS,
        ))
    return CompositeNotifier(notifiers)
