"""
Pytest Configuration and Fixtures

Provides fixtures for:
- In-memory and SQLite-backed repositories
- A scriptable fake payment gateway
- A controllable clock
- Services wired the way the application wires them
- An HTTP client over the ASGI app
"""
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import StaticPool

from app.bootstrap import build_container
from app.core.config import Settings
from app.core.exceptions import GatewayTerminalError
from app.core.retry_policy import RetryPolicy
from app.core.signature import build_signature_header
from app.db.database import build_engine, build_session_factory, create_tables
from app.db.repositories.memory import build_memory_repositories
from app.db.repositories.sql import build_sql_repositories
from app.domain.services.deposit_service import DepositService
from app.domain.services.gateway import (
    AuthorizationResult,
    CancelResult,
    CaptureResult,
    PaymentGateway,
    RefundResult,
)
from app.domain.services.reauthorization_service import ReauthorizationScheduler
from app.domain.services.retry_queue import RetryQueue, RetryQueueProcessor
from app.domain.services.webhook_service import WebhookService
from app.domain.models import RetryTaskKind
from app.main import create_app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WEBHOOK_SECRET = "whsec_test_secret"

START_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """שעון שניתן לקדם ידנית - מוזרק לכל השירותים"""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()


# ============================================================================
# Fake gateway
# ============================================================================

class FakeGateway(PaymentGateway):
    """
    In-process stand-in for the card processor.

    Replays a stored result for a repeated idempotency key, like the real
    gateway. ``fail(method, exc)`` makes the next call(s) to ``method`` raise.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.intents: dict[str, AuthorizationResult] = {}
        self.canceled: list[str] = []
        self.refunds: list[RefundResult] = []
        self.refunds_by_intent: dict[str, list[RefundResult]] = {}
        self.hold_status = "requires_capture"
        self.verification_status = "succeeded"
        self._failures: dict[str, list[Exception]] = {}
        self._replays: dict[str, Any] = {}
        self._ids = itertools.count(1)

    def fail(self, method: str, exc: Exception, times: int = 1) -> None:
        self._failures.setdefault(method, []).extend([exc] * times)

    def set_status(self, intent_id: str, status: str) -> None:
        self.intents[intent_id] = self.intents[intent_id].model_copy(update={"status": status})

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

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
        self._record(
            "authorize",
            amount=amount,
            currency=currency,
            payment_method_id=payment_method_id,
            customer_id=customer_id,
            metadata=metadata,
            capture_method=capture_method,
            idempotency_key=idempotency_key,
        )
        if idempotency_key and idempotency_key in self._replays:
            return self._replays[idempotency_key]
        status = self.verification_status if capture_method == "automatic" else self.hold_status
        result = AuthorizationResult(
            id=f"pi_{next(self._ids)}",
            status=status,
            amount=amount,
            amount_capturable=amount if status == "requires_capture" else 0,
            client_secret="secret_123" if status == "requires_action" else None,
            next_action={"type": "use_stripe_sdk"} if status == "requires_action" else None,
            metadata=metadata,
            last_error_code="card_declined" if status == "requires_payment_method" else None,
            last_error_message="Your card was declined." if status == "requires_payment_method" else None,
        )
        self.intents[result.id] = result
        if idempotency_key:
            self._replays[idempotency_key] = result
        return result

    async def capture(
        self,
        authorization_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> CaptureResult:
        self._record("capture", authorization_id=authorization_id, amount=amount, idempotency_key=idempotency_key)
        return CaptureResult(id=authorization_id, status="succeeded", captured_amount=amount)

    async def cancel(self, authorization_id: str) -> CancelResult:
        self._record("cancel", authorization_id=authorization_id)
        self.canceled.append(authorization_id)
        return CancelResult(id=authorization_id, status="canceled")

    async def refund(
        self,
        authorization_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        self._record("refund", authorization_id=authorization_id, amount=amount, idempotency_key=idempotency_key)
        if idempotency_key and idempotency_key in self._replays:
            return self._replays[idempotency_key]
        result = RefundResult(id=f"re_{next(self._ids)}", status="succeeded", amount=amount)
        self.refunds.append(result)
        self.refunds_by_intent.setdefault(authorization_id, []).append(result)
        if idempotency_key:
            self._replays[idempotency_key] = result
        return result

    def external_refund(self, authorization_id: str, amount: int, refund_id: Optional[str] = None,
                        status: str = "succeeded") -> RefundResult:
        """החזר שבוצע ישירות בדשבורד, בלי לעבור דרך השירות"""
        result = RefundResult(id=refund_id or f"re_{next(self._ids)}", status=status, amount=amount)
        self.refunds_by_intent.setdefault(authorization_id, []).append(result)
        return result

    async def list_refunds(self, authorization_id: str) -> list[RefundResult]:
        self._record("list_refunds", authorization_id=authorization_id)
        return list(reversed(self.refunds_by_intent.get(authorization_id, [])))

    async def retrieve(self, authorization_id: str) -> AuthorizationResult:
        self._record("retrieve", authorization_id=authorization_id)
        intent = self.intents.get(authorization_id)
        if intent is None:
            raise GatewayTerminalError(f"No such payment_intent: {authorization_id}", code="resource_missing")
        return intent


# ============================================================================
# Webhook payload builders
# ============================================================================

_event_counter = itertools.count(1)


def build_event(event_type: str, obj: dict, *, event_id: Optional[str] = None) -> dict:
    """בניית אירוע webhook בפורמט של Stripe"""
    return {
        "id": event_id or f"evt_{next(_event_counter)}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def intent_object(intent_id: str, deposit_id: Optional[str], **fields) -> dict:
    metadata = {"deposit_id": deposit_id} if deposit_id else {}
    metadata.update(fields.pop("metadata", {}))
    return {"id": intent_id, "object": "payment_intent", "metadata": metadata, **fields}


def signed(event: dict, *, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> tuple[bytes, str]:
    """גוף + כותרת חתימה תקינה"""
    body = json.dumps(event).encode()
    return body, build_signature_header(body, secret, timestamp)


# ============================================================================
# Core fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def repositories():
    return build_memory_repositories()


@pytest.fixture
def policy() -> RetryPolicy:
    """ללא jitter - זמני retry דטרמיניסטיים"""
    return RetryPolicy(max_attempts=3, base_seconds=30, max_backoff_seconds=3600, jitter_ratio=0.0)


@pytest.fixture
def deposit_service(repositories, gateway, clock) -> DepositService:
    return DepositService(repositories.deposits, gateway, clock=clock)


@pytest.fixture
def retry_queue(repositories, policy, clock) -> RetryQueue:
    return RetryQueue(repositories.retry_tasks, policy, clock=clock)


@pytest.fixture
def scheduler(deposit_service, retry_queue, repositories, clock) -> ReauthorizationScheduler:
    return ReauthorizationScheduler(deposit_service, retry_queue, repositories.job_runs, clock=clock)


@pytest.fixture
def webhook_service(deposit_service, retry_queue, repositories, clock) -> WebhookService:
    return WebhookService(
        deposit_service,
        repositories.webhook_events,
        retry_queue,
        webhook_secret=WEBHOOK_SECRET,
        clock=clock,
        time_source=clock.timestamp,
    )


@pytest.fixture
def retry_processor(retry_queue, repositories, webhook_service, scheduler) -> RetryQueueProcessor:
    return RetryQueueProcessor(
        retry_queue,
        repositories.job_runs,
        {
            RetryTaskKind.WEBHOOK_EVENT: webhook_service.retry_task,
            RetryTaskKind.REAUTHORIZATION: scheduler.retry_task,
        },
        batch_size=10,
        lease_seconds=120,
    )


@pytest.fixture
def deposit_factory(deposit_service):
    """Factory for deposits that went through initialize()"""
    async def _create(
        hold_amount: int = 50_000,
        currency: str = "usd",
        customer_id: str = "cus_test",
        payment_method_id: str = "pm_card_visa",
        metadata: Optional[dict[str, str]] = None,
    ):
        return await deposit_service.initialize(
            customer_id,
            payment_method_id,
            currency,
            hold_amount,
            metadata=metadata,
        )

    return _create


# ============================================================================
# Application fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        DEBUG=True,
        STORAGE_BACKEND="memory",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
    )


@pytest.fixture
async def container(settings, gateway):
    container = await build_container(settings, gateway=gateway)
    yield container
    await container.close()


@pytest.fixture
async def test_client(container):
    """HTTP client over the app with a prebuilt container"""
    app = create_app(container=container)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ============================================================================
# SQL fixtures
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = build_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def sql_repositories(async_engine):
    return build_sql_repositories(build_session_factory(async_engine))
