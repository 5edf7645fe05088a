"""
API Routes
"""
from fastapi import APIRouter

from app.api.webhooks.stripe import router as stripe_router

router = APIRouter()

router.include_router(stripe_router, prefix="/webhooks", tags=["webhooks"])
