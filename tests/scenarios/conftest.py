"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- שליחת אירועי webhook חתומים דרך WebhookService
- הרצת ה-scheduler לאורך זמן מדומה
- פונקציות אימות לרשומת הפיקדון וה-gateway
"""
from typing import Optional

from app.domain.models import Deposit
from app.state_machine.states import DepositStatus

from tests.conftest import build_event, intent_object, signed


# ============================================================================
# Webhooks
# ============================================================================


async def deliver(webhook_service, event_type: str, obj: dict, *, event_id: Optional[str] = None):
    """חתימה ושליחה של אירוע אחד; מחזיר את ה-WebhookResult"""
    event = build_event(event_type, obj, event_id=event_id)
    body, header = signed(event, timestamp=int(webhook_service.time_source()))
    return await webhook_service.handle(body, header)


async def deliver_intent(webhook_service, event_type: str, deposit: Deposit, intent_id: Optional[str] = None, **fields):
    return await deliver(
        webhook_service,
        event_type,
        intent_object(intent_id or deposit.active_authorization_id, deposit.id, **fields),
    )


# ============================================================================
# Time
# ============================================================================


async def run_scheduler_for(scheduler, clock, *, days: int, every_hours: int = 12) -> list[dict]:
    """מקדם את השעון ומריץ tick בכל מרווח - כמו beat"""
    ticks = []
    for _ in range(days * 24 // every_hours):
        clock.advance(hours=every_hours)
        ticks.append(await scheduler.tick())
    return ticks


# ============================================================================
# Assertions
# ============================================================================


async def assert_deposit_status(deposit_service, deposit_id: str, expected: DepositStatus) -> Deposit:
    deposit = await deposit_service.get(deposit_id)
    assert deposit.status == expected, f"expected {expected.value}, got {deposit.status.value}"
    return deposit


def assert_single_live_hold(gateway, deposit: Deposit) -> None:
    """רק ה-hold הפעיל לא בוטל ב-gateway"""
    holds = [
        a.authorization_id
        for a in deposit.authorization_history
        if a.success and a.authorization_id
    ]
    live = [h for h in holds if h not in gateway.canceled]
    assert live == [deposit.active_authorization_id], live
