"""
Celery tasks for the periodic deposit jobs.

Celery workers are synchronous, so each task runs its job on a private event
loop and builds a container bound to that loop. An engine created under a
previous task's loop cannot be reused, so nothing is cached between runs.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from app.bootstrap import build_container, Container
from app.core.config import get_settings
from app.core.logging import get_logger, set_correlation_id
from app.workers.celery_app import celery_app
from app.workers.jobs import (
    prune_webhook_events_job,
    reauthorization_job,
    retry_queue_job,
)

logger = get_logger(__name__)

Job = Callable[[Container], Awaitable[dict[str, Any]]]


async def _with_container(job: Job) -> dict[str, Any]:
    container = await build_container(get_settings())
    try:
        return await job(container)
    finally:
        await container.close()


def run_job(job: Job) -> dict[str, Any]:
    """
    Run ``job`` to completion on a fresh loop.

    asyncio.Runner cancels leftover tasks and closes async generators before
    the loop is closed.
    """
    cid = set_correlation_id()
    logger.debug("Running periodic job", extra_data={"job": job.__name__, "correlation_id": cid})
    with asyncio.Runner() as runner:
        return runner.run(_with_container(job))


@celery_app.task(name="app.workers.tasks.run_reauthorization")
def run_reauthorization():
    """החלפת holds שמתקרבים לתפוגה"""
    return run_job(reauthorization_job)


@celery_app.task(name="app.workers.tasks.process_retry_queue")
def process_retry_queue():
    """עיבוד משימות retry שהגיע זמנן"""
    return run_job(retry_queue_job)


@celery_app.task(name="app.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events():
    """ניקוי רשומות ישנות מטבלת webhook_events"""
    return run_job(prune_webhook_events_job)
