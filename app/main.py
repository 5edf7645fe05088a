"""
Deposit Hold Service - Main FastAPI Application

Run with ``uvicorn app.main:create_app --factory``.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.routes import router as api_router
from app.bootstrap import Container, build_container
from app.core.config import Settings, get_settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.domain.services.health_service import STATUS_HEALTHY

logger = get_logger(__name__)

_OPENAPI_TAGS = [
    {"name": "webhooks", "description": "קבלת אירועים חתומים מה-gateway (Stripe)."},
    {"name": "Health", "description": "בדיקות חיוּת ותמונת מצב של תור ה-retry וה-jobs."},
]


def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None) -> FastAPI:
    """
    Build the application.

    A prebuilt ``container`` (tests) is used as-is and not closed on shutdown;
    otherwise one is built from ``settings`` at startup.
    """
    settings = settings or (container.settings if container else get_settings())

    # Setup logging before anything else
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=settings.APP_NAME
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
        owned = container is None
        app.state.container = container or await build_container(settings)
        try:
            yield
        finally:
            logger.info("Shutting down application")
            if owned:
                await app.state.container.close()
                logger.info("Storage connections disposed")

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description="ניהול פיקדונות ביטחון כ-authorization holds: אימות, הארכה, חיוב, שחרור והחזר.",
        openapi_tags=_OPENAPI_TAGS,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # Setup middleware (correlation ID, request logging)
    setup_middleware(app)
    setup_exception_handlers(app)

    app.include_router(api_router, prefix="/api")

    @app.get(
        "/health",
        summary="בדיקת חיוּת (Liveness Check)",
        description="בדיקה קלה שהתהליך חי ומגיב. לא בודק תלויות חיצוניות.",
        tags=["Health"],
    )
    async def health_check() -> dict[str, str]:
        """Liveness check - התהליך חי ומגיב."""
        return {"status": "healthy"}

    @app.get(
        "/health/deposits",
        summary="תמונת מצב של ליבת הפיקדונות",
        description=(
            "משימות retry ממתינות, dead letters ותוצאת הריצה האחרונה של כל job. "
            "מחזיר 503 כשיש dead letters או כשה-scheduler נכשל בריצה האחרונה."
        ),
        tags=["Health"],
    )
    async def deposits_health(request: Request) -> JSONResponse:
        snapshot = await request.app.state.container.health.snapshot()
        status_code = 200 if snapshot["status"] == STATUS_HEALTHY else 503
        return JSONResponse(content=snapshot, status_code=status_code)

    return app
