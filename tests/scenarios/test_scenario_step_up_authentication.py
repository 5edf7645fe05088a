"""
תרחיש 4 - אימות מוגבר (3DS) לפני שה-hold הופך לפעיל

מכסה:
- initialize מחזיר requires_action עם client_secret ללקוח
- הלקוח משלים אימות → webhook מעביר ל-authorized
- השלמה ידנית דרך resolve_action
- הלקוח נכשל באימות → failed
"""
import pytest

from app.core.exceptions import ConflictError
from app.state_machine.states import DepositStatus

from tests.scenarios.conftest import assert_deposit_status, deliver_intent


@pytest.mark.scenario
class TestStepUpAuthentication:
    """requires_action → authorized / failed"""

    @pytest.fixture(autouse=True)
    def _requires_action(self, gateway):
        gateway.hold_status = "requires_action"

    async def test_completed_through_webhook(self, deposit_factory, deposit_service, webhook_service, gateway, clock):
        deposit = await deposit_factory(hold_amount=20_000)
        assert deposit.status == DepositStatus.REQUIRES_ACTION
        assert deposit.action_required.client_secret == "secret_123"
        assert deposit.initial_authorization_at is None

        # לא ניתן לחייב לפני השלמת האימות
        with pytest.raises(ConflictError):
            await deposit_service.capture(deposit.id)

        clock.advance(minutes=3)
        gateway.set_status(deposit.active_authorization_id, "requires_capture")
        await deliver_intent(webhook_service, "payment_intent.amount_capturable_updated", deposit)

        authorized = await assert_deposit_status(deposit_service, deposit.id, DepositStatus.AUTHORIZED)
        assert authorized.action_required is None
        assert authorized.last_authorization_at == clock()

    async def test_completed_through_resolve_action(self, deposit_factory, deposit_service, gateway):
        deposit = await deposit_factory()

        with pytest.raises(ConflictError):
            await deposit_service.resolve_action(deposit.id)

        gateway.set_status(deposit.active_authorization_id, "requires_capture")
        resolved = await deposit_service.resolve_action(deposit.id)

        assert resolved.status == DepositStatus.AUTHORIZED
        captured = await deposit_service.capture(deposit.id)
        assert captured.status == DepositStatus.CAPTURED

    async def test_customer_fails_authentication(self, deposit_factory, deposit_service, webhook_service):
        deposit = await deposit_factory()

        await deliver_intent(
            webhook_service,
            "payment_intent.payment_failed",
            deposit,
            last_payment_error={"code": "authentication_required", "message": "3DS failed"},
        )

        failed = await assert_deposit_status(deposit_service, deposit.id, DepositStatus.FAILED)
        assert failed.last_error.code == "authentication_required"
        assert failed.action_required is None
