"""
Webhook Service - ingestion pipeline for gateway notifications.

verify signature -> parse -> dedup on event id -> dispatch (bounded by a
timeout) -> record the event id once the transition has committed.

Transient failures are parked in the retry queue; terminal ones (unknown
deposit, missing deposit_id) are logged and recorded as processed.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from app.core.exceptions import GatewayTerminalError, NotFoundError, SignatureError, ValidationError
from app.core.logging import get_logger
from app.core.signature import verify_signature
from app.db.repositories.base import WebhookEventRepository
from app.domain.models import RetryTask, RetryTaskKind, utcnow
from app.domain.services.deposit_service import DepositService
from app.domain.services.retry_queue import RetryQueue, webhook_dedup_key

logger = get_logger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_DISCARDED = "discarded"
OUTCOME_DEFERRED = "deferred"

EventHandler = Callable[[dict[str, Any]], Awaitable[str]]


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str


def parse_event(raw_body: bytes) -> dict[str, Any]:
    """Decode a verified body into an event with ``id``, ``type`` and ``data.object``"""
    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Webhook payload is not valid JSON", field="body")

    if not isinstance(event, dict):
        raise ValidationError("Webhook payload must be a JSON object", field="body")
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise ValidationError("Webhook event is missing an id", field="id")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise ValidationError("Webhook event is missing a type", field="type")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise ValidationError("Webhook event is missing data.object", field="data")
    return event


class WebhookService:
    def __init__(
        self,
        deposits: DepositService,
        events: WebhookEventRepository,
        retry_queue: RetryQueue,
        *,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        processing_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
        time_source: Callable[[], float] = time.time,
    ):
        self.deposits = deposits
        self.events = events
        self.retry_queue = retry_queue
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.processing_timeout_seconds = processing_timeout_seconds
        self.clock = clock
        self.time_source = time_source
        self._handlers: dict[str, EventHandler] = {
            "payment_intent.amount_capturable_updated": self._on_amount_capturable_updated,
            "payment_intent.requires_action": self._on_requires_action,
            "payment_intent.payment_failed": self._on_payment_failed,
            "payment_intent.requires_payment_method": self._on_payment_failed,
            "payment_intent.canceled": self._on_canceled,
            "payment_intent.succeeded": self._on_succeeded,
            "charge.refunded": self._on_charge_refunded,
            "charge.dispute.created": self._on_dispute_created,
        }

    @classmethod
    def from_settings(cls, deposits, events, retry_queue, settings) -> "WebhookService":
        return cls(
            deposits,
            events,
            retry_queue,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
            processing_timeout_seconds=settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
        )

    @property
    def gateway(self):
        return self.deposits.gateway

    # ── entry points ──

    async def handle(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Process one inbound delivery.

        Raises:
            SignatureError: bad signature or stale timestamp; never retried.
            ValidationError: verified body that is not a usable event.
        """
        try:
            verify_signature(
                raw_body,
                signature_header,
                self.webhook_secret,
                tolerance_seconds=self.tolerance_seconds,
                now=self.time_source,
            )
        except SignatureError as exc:
            logger.security_event(
                "Webhook signature rejected",
                extra_data={"reason": exc.details.get("reason")},
            )
            raise

        event = parse_event(raw_body)
        event_id, event_type = event["id"], event["type"]

        try:
            outcome = await asyncio.wait_for(
                self.process_event(event),
                timeout=self.processing_timeout_seconds,
            )
        except Exception as exc:
            if not self.retry_queue.policy.is_transient(exc):
                raise
            logger.warning(
                "Webhook processing deferred",
                extra_data={"event_id": event_id, "event_type": event_type, "error": repr(exc)},
            )
            await self.retry_queue.enqueue(
                RetryTaskKind.WEBHOOK_EVENT,
                {"event": event},
                webhook_dedup_key(event_id),
                error=repr(exc),
            )
            outcome = OUTCOME_DEFERRED

        return WebhookResult(event_id=event_id, event_type=event_type, outcome=outcome)

    async def process_event(self, event: dict[str, Any]) -> str:
        """Dedup, dispatch and record; transient errors propagate"""
        event_id, event_type = event["id"], event["type"]
        if await self.events.is_processed(event_id):
            logger.info("Skipping duplicate webhook event", extra_data={"event_id": event_id})
            return OUTCOME_DUPLICATE

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Unhandled webhook event type", extra_data={"event_type": event_type})
            outcome = OUTCOME_IGNORED
        else:
            try:
                outcome = await handler(event["data"]["object"])
            except NotFoundError as exc:
                logger.warning(
                    "Webhook event for unknown deposit",
                    extra_data={"event_id": event_id, "event_type": event_type, "error": exc.message},
                )
                outcome = OUTCOME_DISCARDED

        recorded = await self.events.mark_processed(event_id, event_type, self.clock())
        if not recorded:
            # a concurrent delivery committed first; the transitions are idempotent
            return OUTCOME_DUPLICATE

        logger.info(
            "Webhook event handled",
            extra_data={"event_id": event_id, "event_type": event_type, "outcome": outcome},
        )
        return outcome

    async def retry_task(self, task: RetryTask) -> None:
        """Retry-queue handler"""
        await self.process_event(task.payload["event"])

    async def prune(self, retention_days: int) -> int:
        cutoff = self.clock() - timedelta(days=retention_days)
        removed = await self.events.prune(cutoff)
        logger.info("Pruned processed webhook events", extra_data={"removed": removed})
        return removed

    # ── deposit lookup ──

    @staticmethod
    def _deposit_id_from(obj: dict[str, Any]) -> Optional[str]:
        return (obj.get("metadata") or {}).get("deposit_id")

    def _missing_deposit(self, obj: dict[str, Any]) -> str:
        logger.warning(
            "Webhook object missing deposit_id metadata",
            extra_data={"object_id": obj.get("id"), "object": obj.get("object")},
        )
        return OUTCOME_DISCARDED

    async def _deposit_id_for_intent(self, obj: dict[str, Any], intent_id: Optional[str]) -> Optional[str]:
        """Charges and disputes resolve their deposit through the PaymentIntent"""
        deposit_id = self._deposit_id_from(obj)
        if deposit_id or not intent_id:
            return deposit_id
        try:
            intent = await self.gateway.retrieve(intent_id)
        except GatewayTerminalError as exc:
            logger.warning(
                "PaymentIntent unknown to the gateway",
                extra_data={"intent_id": intent_id, "object_id": obj.get("id"), "code": exc.code},
            )
            return None
        return intent.metadata.get("deposit_id")

    # ── handlers ──

    @staticmethod
    def _is_verification(intent: dict[str, Any]) -> bool:
        return (intent.get("metadata") or {}).get("purpose") == "verification_charge"

    async def _on_amount_capturable_updated(self, intent: dict[str, Any]) -> str:
        deposit_id = self._deposit_id_from(intent)
        if not deposit_id:
            return self._missing_deposit(intent)
        await self.deposits.confirm_authorized(deposit_id, intent["id"])
        return OUTCOME_PROCESSED

    async def _on_requires_action(self, intent: dict[str, Any]) -> str:
        deposit_id = self._deposit_id_from(intent)
        if not deposit_id:
            return self._missing_deposit(intent)
        await self.deposits.mark_requires_action(
            deposit_id,
            intent["id"],
            next_action=intent.get("next_action"),
            client_secret=intent.get("client_secret"),
        )
        return OUTCOME_PROCESSED

    async def _on_payment_failed(self, intent: dict[str, Any]) -> str:
        if self._is_verification(intent):
            return OUTCOME_IGNORED
        deposit_id = self._deposit_id_from(intent)
        if not deposit_id:
            return self._missing_deposit(intent)
        error = intent.get("last_payment_error") or {}
        await self.deposits.mark_authorization_failed(
            deposit_id,
            intent["id"],
            code=error.get("code") or "unknown",
            message=error.get("message") or "Payment failed",
        )
        return OUTCOME_PROCESSED

    async def _on_canceled(self, intent: dict[str, Any]) -> str:
        if self._is_verification(intent):
            return OUTCOME_IGNORED
        deposit_id = self._deposit_id_from(intent)
        if not deposit_id:
            return self._missing_deposit(intent)
        await self.deposits.mark_canceled(deposit_id, intent["id"])
        return OUTCOME_PROCESSED

    async def _on_succeeded(self, intent: dict[str, Any]) -> str:
        if self._is_verification(intent):
            return OUTCOME_IGNORED
        deposit_id = self._deposit_id_from(intent)
        if not deposit_id:
            return self._missing_deposit(intent)
        amount = intent.get("amount_received")
        if amount is None:
            amount = intent.get("amount", 0)
        await self.deposits.mark_captured(deposit_id, intent["id"], int(amount))
        return OUTCOME_PROCESSED

    async def _on_charge_refunded(self, charge: dict[str, Any]) -> str:
        intent_id = charge.get("payment_intent")
        deposit_id = await self._deposit_id_for_intent(charge, intent_id)
        if not deposit_id or not intent_id:
            return self._missing_deposit(charge)
        # the Charge does not reliably embed its refunds; ask the gateway for the real ids
        refunds = await self.gateway.list_refunds(intent_id)
        await self.deposits.reconcile_refunds(deposit_id, intent_id, refunds)
        return OUTCOME_PROCESSED

    async def _on_dispute_created(self, dispute: dict[str, Any]) -> str:
        intent_id = dispute.get("payment_intent")
        deposit_id = await self._deposit_id_for_intent(dispute, intent_id)
        if not deposit_id or not intent_id:
            return self._missing_deposit(dispute)
        await self.deposits.flag_dispute(deposit_id, intent_id, dispute["id"], dispute.get("reason"))
        return OUTCOME_PROCESSED
