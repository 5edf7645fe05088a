"""
Payment Gateway - ממשק + מימוש Stripe.

שכבת הלוגיקה תלויה רק ב-PaymentGateway; StripeGateway משתמש ב-SDK הרשמי
של stripe (מתודות async), עטוף ב-circuit breaker.

סיווג שגיאות:
- CardError / InvalidRequestError / Authentication / Permission → GatewayTerminalError
- RateLimit / APIConnection / APIError / breaker פתוח / כל השאר → GatewayTransientError
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import stripe
from pydantic import BaseModel, ConfigDict

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.exceptions import (
    ErrorCode,
    GatewayError,
    GatewayTerminalError,
    GatewayTransientError,
)
from app.core.logging import get_logger

logger = get_logger(__name__)

# Stripe PaymentIntent statuses
INTENT_REQUIRES_CAPTURE = "requires_capture"
INTENT_REQUIRES_ACTION = "requires_action"
INTENT_PROCESSING = "processing"
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"


class _Result(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class AuthorizationResult(_Result):
    id: str
    status: str
    amount: Optional[int] = None
    amount_capturable: Optional[int] = None
    next_action: Optional[dict[str, Any]] = None
    client_secret: Optional[str] = None
    metadata: dict[str, str] = {}
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None


class CaptureResult(_Result):
    id: str
    status: str
    captured_amount: int


class CancelResult(_Result):
    id: str
    status: str


class RefundResult(_Result):
    id: str
    status: str
    amount: int


class PaymentGateway(ABC):
    """
    Async client for the external card processor.

    Every method raises GatewayTransientError (retry later) or
    GatewayTerminalError (never retry).
    """

    @abstractmethod
    async def authorize(
        self,
        amount: int,
        currency: str,
        payment_method_id: str,
        customer_id: str,
        metadata: dict[str, str],
        capture_method: str = "manual",
        idempotency_key: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Create and confirm an authorization.

        ``capture_method="manual"`` places a hold; ``"automatic"`` settles
        immediately (used for the verification charge).
        """

    @abstractmethod
    async def capture(
        self,
        authorization_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> CaptureResult:
        ...

    @abstractmethod
    async def cancel(self, authorization_id: str) -> CancelResult:
        ...

    @abstractmethod
    async def refund(
        self,
        authorization_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        ...

    @abstractmethod
    async def list_refunds(self, authorization_id: str) -> list[RefundResult]:
        """Refunds issued against the authorization, newest first"""

    @abstractmethod
    async def retrieve(self, authorization_id: str) -> AuthorizationResult:
        ...


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Stripe objects are dict subclasses; plain dicts work the same way"""
    if obj is None:
        return default
    value = obj.get(name)
    return default if value is None else value


def _plain(obj: Any) -> Optional[dict[str, Any]]:
    return dict(obj) if obj else None


def _authorization_from_intent(intent: Any) -> AuthorizationResult:
    last_error = _field(intent, "last_payment_error", {})
    return AuthorizationResult(
        id=intent["id"],
        status=_field(intent, "status", ""),
        amount=_field(intent, "amount"),
        amount_capturable=_field(intent, "amount_capturable"),
        next_action=_plain(_field(intent, "next_action")),
        client_secret=_field(intent, "client_secret"),
        metadata=_plain(_field(intent, "metadata")) or {},
        last_error_code=_field(last_error, "code"),
        last_error_message=_field(last_error, "message"),
    )


def _refund_from_object(refund: Any, fallback_amount: int = 0) -> RefundResult:
    return RefundResult(
        id=refund["id"],
        status=_field(refund, "status", ""),
        amount=_field(refund, "amount", fallback_amount),
    )


def classify_stripe_error(error: stripe.StripeError, operation: str) -> GatewayError:
    """
    Map an SDK error onto the two gateway error kinds.

    Card errors and invalid requests are terminal; rate limits, network
    errors, idempotency lock conflicts and 5xx are transient. Anything
    unrecognised is treated as transient.
    """
    json_body = error.json_body if isinstance(error.json_body, dict) else {}
    body = json_body.get("error") or {}
    message = error.user_message or str(error) or f"Stripe {operation} failed"
    http_status = error.http_status

    if isinstance(error, (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError)):
        return GatewayTerminalError(
            message,
            code=error.code or body.get("code"),
            decline_code=body.get("decline_code"),
            http_status=http_status,
        )
    if isinstance(error, stripe.APIConnectionError):
        return GatewayTransientError(
            f"Stripe {operation} network error: {error}",
            code=error.code or "network_error",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
        )
    return GatewayTransientError(message, code=error.code or body.get("code"), http_status=http_status)


class StripeGateway(PaymentGateway):
    """PaymentGateway over the official ``stripe`` SDK, async methods only"""

    def __init__(
        self,
        api_key: str = "",
        *,
        api_base: str = "https://api.stripe.com",
        timeout_seconds: float = 15.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[stripe.StripeClient] = None,
    ) -> None:
        # the retry queue owns retries; the SDK must not replay on its own
        self._client = client or stripe.StripeClient(
            api_key,
            base_addresses={"api": api_base},
            http_client=stripe.HTTPXClient(timeout=timeout_seconds),
            max_network_retries=0,
        )
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            "stripe",
            CircuitBreakerConfig(failure_threshold=5, timeout_seconds=30.0),
            is_failure=lambda exc: isinstance(exc, GatewayTransientError),
        )

    @classmethod
    def from_settings(cls, settings) -> "StripeGateway":
        return cls(
            settings.STRIPE_SECRET_KEY,
            api_base=settings.STRIPE_API_BASE,
            timeout_seconds=settings.STRIPE_TIMEOUT_SECONDS,
        )

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        async def _guarded() -> Any:
            try:
                return await func(*args, **kwargs)
            except stripe.StripeError as e:
                mapped = classify_stripe_error(e, operation)
                logger.warning(
                    "Stripe request failed",
                    extra_data={
                        "operation": operation,
                        "error_type": type(e).__name__,
                        "status_code": e.http_status,
                        "code": mapped.code,
                        "transient": isinstance(mapped, GatewayTransientError),
                    },
                )
                raise mapped from e

        return await self._circuit_breaker.execute(_guarded)

    @staticmethod
    def _options(idempotency_key: Optional[str]) -> dict[str, str]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    # ── PaymentGateway ──

    async def authorize(
        self,
        amount: int,
        currency: str,
        payment_method_id: str,
        customer_id: str,
        metadata: dict[str, str],
        capture_method: str = "manual",
        idempotency_key: Optional[str] = None,
    ) -> AuthorizationResult:
        intent = await self._call(
            "authorize",
            self._client.payment_intents.create_async,
            params={
                "amount": amount,
                "currency": currency,
                "customer": customer_id,
                "payment_method": payment_method_id,
                "confirm": True,
                "off_session": True,
                "capture_method": capture_method,
                "metadata": metadata,
            },
            options=self._options(idempotency_key),
        )
        return _authorization_from_intent(intent)

    async def capture(
        self,
        authorization_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> CaptureResult:
        intent = await self._call(
            "capture",
            self._client.payment_intents.capture_async,
            authorization_id,
            params={"amount_to_capture": amount},
            options=self._options(idempotency_key),
        )
        return CaptureResult(
            id=intent["id"],
            status=_field(intent, "status", ""),
            captured_amount=_field(intent, "amount_received", amount),
        )

    async def cancel(self, authorization_id: str) -> CancelResult:
        intent = await self._call("cancel", self._client.payment_intents.cancel_async, authorization_id)
        return CancelResult(id=intent["id"], status=_field(intent, "status", ""))

    async def refund(
        self,
        authorization_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        refund = await self._call(
            "refund",
            self._client.refunds.create_async,
            params={"payment_intent": authorization_id, "amount": amount},
            options=self._options(idempotency_key),
        )
        return _refund_from_object(refund, amount)

    async def list_refunds(self, authorization_id: str) -> list[RefundResult]:
        page = await self._call(
            "list_refunds",
            self._client.refunds.list_async,
            params={"payment_intent": authorization_id, "limit": 100},
        )
        return [_refund_from_object(refund) for refund in _field(page, "data", [])]

    async def retrieve(self, authorization_id: str) -> AuthorizationResult:
        intent = await self._call("retrieve", self._client.payment_intents.retrieve_async, authorization_id)
        return _authorization_from_intent(intent)
