"""
In-process periodic loops - an alternative to Celery beat for single-process
deployments.

Run with ``python -m app.workers.loop``. SIGINT/SIGTERM stop the loops after
the batch in progress finishes.
"""
from __future__ import annotations

import asyncio
import signal
from typing import Any, Awaitable, Callable, Optional

from app.bootstrap import Container, build_container
from app.core.config import get_settings
from app.core.logging import get_logger, setup_logging
from app.workers.jobs import (
    prune_webhook_events_job,
    reauthorization_job,
    retry_queue_job,
)

logger = get_logger(__name__)

WEBHOOK_PRUNE_INTERVAL_SECONDS = 86400.0


class PeriodicLoop:
    """Runs ``job`` every ``interval_seconds`` until stopped"""

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        *,
        on_stop: Optional[Callable[[], None]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.job = job
        self.interval_seconds = interval_seconds
        self.on_stop = on_stop
        self.runs = 0
        self._stop_event = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        if self.stopped:
            return
        self._stop_event.set()
        if self.on_stop is not None:
            self.on_stop()

    async def run(self) -> None:
        logger.info("Periodic loop started", extra_data={"loop": self.name, "interval": self.interval_seconds})
        while not self.stopped:
            try:
                await self.job()
            except Exception as e:
                logger.error(
                    "Periodic loop iteration failed",
                    extra_data={"loop": self.name, "error": str(e)},
                    exc_info=True,
                )
            self.runs += 1
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Periodic loop stopped", extra_data={"loop": self.name, "runs": self.runs})


def build_loops(container: Container) -> list[PeriodicLoop]:
    settings = container.settings
    return [
        PeriodicLoop(
            "reauthorization",
            lambda: reauthorization_job(container),
            settings.REAUTH_INTERVAL_SECONDS,
            on_stop=container.scheduler.request_stop,
        ),
        PeriodicLoop(
            "retry_queue",
            lambda: retry_queue_job(container),
            settings.RETRY_INTERVAL_SECONDS,
            on_stop=container.retry_processor.request_stop,
        ),
        PeriodicLoop(
            "webhook_event_cleanup",
            lambda: prune_webhook_events_job(container),
            WEBHOOK_PRUNE_INTERVAL_SECONDS,
        ),
    ]


async def run_loops(container: Container, loops: Optional[list[PeriodicLoop]] = None) -> None:
    loops = loops if loops is not None else build_loops(container)
    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            event_loop.add_signal_handler(sig, lambda: [loop.stop() for loop in loops])
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass
    await asyncio.gather(*(loop.run() for loop in loops))


async def main() -> None:
    settings = get_settings()
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=settings.APP_NAME,
    )
    container = await build_container(settings)
    try:
        await run_loops(container)
    finally:
        await container.close()


if __name__ == "__main__":
    asyncio.run(main())
