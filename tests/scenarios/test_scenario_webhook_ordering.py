"""
תרחיש 3 - אירועי gateway שמגיעים לפני, אחרי ובמקום התשובה הסינכרונית

מכסה:
- payment_intent.succeeded שמגיע לפני שה-capture שלנו חזר
- אירוע של hold שכבר הוחלף (superseded) לא משנה את הרשומה
- ביטול מה-dashboard של ה-gateway
- החזר שבוצע מחוץ למערכת (charge.refunded)
- אירוע כפול מעובד פעם אחת
"""
import pytest

from app.state_machine.states import DepositStatus

from tests.scenarios.conftest import (
    assert_deposit_status,
    deliver,
    deliver_intent,
    run_scheduler_for,
)


@pytest.mark.scenario
class TestWebhookOrdering:
    """אירועים לא מסודרים לא שוברים את מכונת המצבים"""

    async def test_succeeded_webhook_before_capture_returns(self, deposit_factory, deposit_service, webhook_service, gateway):
        deposit = await deposit_factory(hold_amount=25_000)

        result = await deliver_intent(
            webhook_service, "payment_intent.succeeded", deposit, amount_received=25_000, status="succeeded"
        )
        captured = await deposit_service.capture(deposit.id)

        assert result.outcome == "processed"
        assert captured.status == DepositStatus.CAPTURED
        assert captured.captured_amount == 25_000
        assert len(captured.capture_history) == 1
        # ה-capture שלנו זיהה שהחיוב כבר נרשם ולא פנה שוב ל-gateway
        assert gateway.calls_to("capture") == []

    async def test_superseded_hold_events_are_ignored(self, deposit_factory, deposit_service, webhook_service, scheduler, clock):
        deposit = await deposit_factory()
        old_hold = deposit.active_authorization_id
        await run_scheduler_for(scheduler, clock, days=7)

        result = await deliver_intent(webhook_service, "payment_intent.canceled", deposit, intent_id=old_hold)

        assert result.outcome == "processed"
        current = await assert_deposit_status(deposit_service, deposit.id, DepositStatus.AUTHORIZED)
        assert current.active_authorization_id != old_hold

    async def test_dashboard_cancel(self, deposit_factory, deposit_service, webhook_service):
        deposit = await deposit_factory(hold_amount=12_000)

        await deliver_intent(webhook_service, "payment_intent.canceled", deposit, status="canceled")

        canceled = await assert_deposit_status(deposit_service, deposit.id, DepositStatus.CANCELED)
        assert canceled.released_amount == 12_000
        # אחרי ביטול אין מה לשחרר
        released = await deposit_service.release(deposit.id)
        assert released.status == DepositStatus.CANCELED

    async def test_refund_issued_outside_the_service(self, deposit_factory, deposit_service, webhook_service, gateway):
        deposit = await deposit_factory(hold_amount=30_000)
        captured = await deposit_service.capture(deposit.id)
        gateway.external_refund(captured.capture_authorization_id, 5_000, "re_dashboard")

        await deliver(
            webhook_service,
            "charge.refunded",
            {
                "id": "ch_1",
                "object": "charge",
                "payment_intent": captured.capture_authorization_id,
                "amount_refunded": 5_000,
                "metadata": {"deposit_id": deposit.id},
            },
        )

        current = await assert_deposit_status(deposit_service, deposit.id, DepositStatus.PARTIALLY_REFUNDED)
        assert current.refunded_amount == 5_000
        assert current.refund_history[0].refund_id == "re_dashboard"

        # החזר נוסף דרך השירות ממשיך מהיתרה המעודכנת
        final = await deposit_service.refund(deposit.id, 25_000)
        assert final.status == DepositStatus.REFUNDED

    async def test_duplicate_delivery_applied_once(self, deposit_factory, deposit_service, webhook_service):
        deposit = await deposit_factory(hold_amount=30_000)

        first = await deliver(
            webhook_service,
            "payment_intent.succeeded",
            {"id": deposit.active_authorization_id, "object": "payment_intent",
             "amount_received": 30_000, "metadata": {"deposit_id": deposit.id}},
            event_id="evt_dup",
        )
        second = await deliver(
            webhook_service,
            "payment_intent.succeeded",
            {"id": deposit.active_authorization_id, "object": "payment_intent",
             "amount_received": 30_000, "metadata": {"deposit_id": deposit.id}},
            event_id="evt_dup",
        )

        assert (first.outcome, second.outcome) == ("processed", "duplicate")
        current = await deposit_service.get(deposit.id)
        assert len(current.capture_history) == 1
