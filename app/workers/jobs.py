"""
Periodic jobs shared by the Celery tasks and the in-process PeriodicLoop.

A job never lets an error escape: failures are logged (and recorded as a
JobRun by the component itself) and the next run tries again.
"""
from typing import Any

from app.bootstrap import Container
from app.core.logging import get_logger

logger = get_logger(__name__)


async def reauthorization_job(container: Container) -> dict[str, Any]:
    try:
        return await container.scheduler.tick()
    except Exception as e:
        logger.error(
            "Reauthorization job failed",
            extra_data={"error": str(e)},
            exc_info=True,
        )
        return {"error": str(e)}


async def retry_queue_job(container: Container) -> dict[str, Any]:
    try:
        return await container.retry_processor.run_once()
    except Exception as e:
        logger.error(
            "Retry queue job failed",
            extra_data={"error": str(e)},
            exc_info=True,
        )
        return {"error": str(e)}


async def prune_webhook_events_job(container: Container) -> dict[str, Any]:
    try:
        removed = await container.webhooks.prune(container.settings.WEBHOOK_EVENT_RETENTION_DAYS)
        return {"deleted": removed}
    except Exception as e:
        logger.error(
            "Webhook event cleanup failed",
            extra_data={"error": str(e)},
            exc_info=True,
        )
        return {"error": str(e)}
