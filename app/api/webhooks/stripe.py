"""
Stripe Webhook Handler

מקבל אירועי PaymentIntent / Charge מ-Stripe ומעביר אותם ל-WebhookService.
הגוף נקרא כ-bytes גולמיים: החתימה מחושבת על הגוף המקורי בדיוק.
"""
from fastapi import APIRouter, Depends, Header, Request

from app.api.dependencies.container import get_container
from app.bootstrap import Container
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/stripe",
    summary="קבלת אירוע Stripe",
    description=(
        "אימות כותרת Stripe-Signature, dedup לפי event id ועיבוד המעבר במכונת המצבים. "
        "כשל זמני נדחה לתור ה-retry והתשובה היא 200 עם outcome=deferred."
    ),
    responses={400: {"description": "חתימה לא תקינה או payload לא תקין"}},
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    container: Container = Depends(get_container),
) -> dict:
    raw_body = await request.body()
    result = await container.webhooks.handle(raw_body, stripe_signature)
    return {
        "received": True,
        "event_id": result.event_id,
        "outcome": result.outcome,
    }
