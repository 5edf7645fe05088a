"""
בדיקות ל-endpoint של Stripe webhook דרך אפליקציית FastAPI.
"""
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.core.exceptions import GatewayTransientError
from app.core.signature import build_signature_header

from tests.conftest import build_event, intent_object, signed

WEBHOOK_URL = "/api/webhooks/stripe"


async def _post(client: httpx.AsyncClient, body: bytes, header: str | None, **headers) -> httpx.Response:
    if header is not None:
        headers["Stripe-Signature"] = header
    headers.setdefault("Content-Type", "application/json")
    return await client.post(WEBHOOK_URL, content=body, headers=headers)


@pytest.fixture
async def authorized_deposit(container):
    return await container.deposits.initialize("cus_api", "pm_card_visa", "usd", 40_000)


class TestStripeWebhookEndpoint:
    """בדיקות HTTP ל-/api/webhooks/stripe."""

    @pytest.mark.unit
    async def test_valid_event_is_processed(self, test_client, authorized_deposit):
        event = build_event(
            "payment_intent.amount_capturable_updated",
            intent_object(authorized_deposit.active_authorization_id, authorized_deposit.id, status="requires_capture"),
        )
        body, header = signed(event)

        response = await _post(test_client, body, header)

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_id": event["id"], "outcome": "processed"}

    @pytest.mark.unit
    async def test_redelivery_is_duplicate(self, test_client, authorized_deposit):
        event = build_event(
            "payment_intent.amount_capturable_updated",
            intent_object(authorized_deposit.active_authorization_id, authorized_deposit.id),
        )
        body, header = signed(event)

        await _post(test_client, body, header)
        response = await _post(test_client, body, header)

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"

    @pytest.mark.unit
    async def test_unknown_event_type_is_ignored(self, test_client):
        body, header = signed(build_event("customer.created", {"id": "cus_1", "object": "customer"}))

        response = await _post(test_client, body, header)

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    @pytest.mark.unit
    async def test_bad_signature_rejected(self, test_client, container):
        body, _ = signed(build_event("payment_intent.canceled", intent_object("pi_1", "dep_1")))
        header = build_signature_header(body, "whsec_wrong")

        response = await _post(test_client, body, header)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_7001"
        # לא נרשם ולא נדחה לתור
        assert await container.repositories.retry_tasks.count_pending() == 0

    @pytest.mark.unit
    async def test_missing_signature_rejected(self, test_client):
        body = json.dumps(build_event("payment_intent.canceled", intent_object("pi_1", "dep_1"))).encode()

        response = await _post(test_client, body, None)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_7001"

    @pytest.mark.unit
    async def test_signed_garbage_is_validation_error(self, test_client):
        body = b"not json"
        header = build_signature_header(body, "whsec_test_secret")

        response = await _post(test_client, body, header)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_1001"

    @pytest.mark.unit
    async def test_transient_failure_is_deferred(self, test_client, container, authorized_deposit):
        event = build_event(
            "payment_intent.amount_capturable_updated",
            intent_object(authorized_deposit.active_authorization_id, authorized_deposit.id),
        )
        body, header = signed(event)

        with patch.object(
            container.webhooks.deposits,
            "confirm_authorized",
            new_callable=AsyncMock,
            side_effect=GatewayTransientError("storage hiccup"),
        ):
            response = await _post(test_client, body, header)

        assert response.status_code == 200
        assert response.json()["outcome"] == "deferred"
        assert await container.retry_queue.has_live_task(f"webhook:{event['id']}")
        assert not await container.repositories.webhook_events.is_processed(event["id"])

    @pytest.mark.unit
    async def test_correlation_id_header(self, test_client):
        body, header = signed(build_event("customer.created", {"id": "cus_1"}))

        response = await _post(test_client, body, header, **{"X-Correlation-ID": "webhook-corr-1"})

        assert response.headers["X-Correlation-ID"] == "webhook-corr-1"
