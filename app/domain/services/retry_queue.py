"""
Retry Queue - durable deferred work with backoff and dead-lettering.

Webhook events and reauthorization attempts that fail transiently land here.
The processor re-runs them until they succeed (the task is deleted) or
exhaust the policy (the task is flagged dead_letter and never retried again).
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from app.core.exceptions import ConcurrencyConflictError, NotFoundError
from app.core.logging import get_logger, log_async_operation
from app.core.retry_policy import RetryPolicy
from app.db.repositories.base import JobRunRepository, RetryTaskRepository
from app.domain.models import RetryTask, RetryTaskKind, utcnow

logger = get_logger(__name__)

TaskHandler = Callable[[RetryTask], Awaitable[None]]


def reauthorization_dedup_key(deposit_id: str) -> str:
    return f"reauthorization:{deposit_id}"


def webhook_dedup_key(event_id: str) -> str:
    return f"webhook:{event_id}"


class RetryQueue:
    """Enqueue side, shared by the webhook pipeline and the scheduler"""

    def __init__(
        self,
        repository: RetryTaskRepository,
        policy: RetryPolicy,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.policy = policy
        self.clock = clock

    async def enqueue(
        self,
        kind: RetryTaskKind,
        payload: dict[str, Any],
        dedup_key: str,
        error: Optional[BaseException | str] = None,
    ) -> RetryTask:
        """
        Create a task due after the first backoff step.

        When a live task with ``dedup_key`` already exists it is returned
        unchanged.
        """
        now = self.clock()
        task = RetryTask(
            kind=kind,
            dedup_key=dedup_key,
            payload=payload,
            attempts=0,
            next_attempt_at=now + timedelta(seconds=self.policy.delay_seconds(0)),
            last_error=str(error) if error is not None else None,
            created_at=now,
            updated_at=now,
        )
        stored = await self.repository.add(task)
        if stored.id != task.id:
            logger.info(
                "Retry task already queued",
                extra_data={"dedup_key": dedup_key, "task_id": stored.id},
            )
        else:
            logger.info(
                "Retry task queued",
                extra_data={
                    "task_id": stored.id,
                    "kind": kind.value,
                    "dedup_key": dedup_key,
                    "next_attempt_at": stored.next_attempt_at.isoformat(),
                    "error": stored.last_error,
                },
            )
        return stored

    async def has_live_task(self, dedup_key: str) -> bool:
        return await self.repository.find_live_by_dedup_key(dedup_key) is not None

    async def list_dead_letters(self, limit: int = 100) -> list[RetryTask]:
        return await self.repository.list_dead_letters(limit)


class RetryQueueProcessor:
    """Periodic consumer: lease due tasks, run their handler, settle the outcome"""

    JOB_NAME = "retry_queue"

    def __init__(
        self,
        queue: RetryQueue,
        job_runs: JobRunRepository,
        handlers: dict[RetryTaskKind, TaskHandler],
        *,
        batch_size: int = 10,
        lease_seconds: int = 120,
    ):
        self.queue = queue
        self.job_runs = job_runs
        self.handlers = handlers
        self.batch_size = batch_size
        self.lease = timedelta(seconds=lease_seconds)
        self._stop_requested = False

    @property
    def repository(self) -> RetryTaskRepository:
        return self.queue.repository

    @property
    def policy(self) -> RetryPolicy:
        return self.queue.policy

    def request_stop(self) -> None:
        """Finish the task in flight, then lease nothing more"""
        self._stop_requested = True

    @log_async_operation("retry_queue_pass")
    async def run_once(self) -> dict[str, int]:
        started_at = self.queue.clock()
        stats = {"due": 0, "succeeded": 0, "rescheduled": 0, "dead_lettered": 0, "skipped": 0}
        try:
            due = await self.repository.list_due(started_at, self.batch_size)
            stats["due"] = len(due)
            for task in due:
                if self._stop_requested:
                    logger.info("Retry processor stopping", extra_data={"remaining": stats["due"]})
                    break
                outcome = await self._process(task)
                stats[outcome] += 1
        except Exception as exc:
            await self.job_runs.record(
                self.JOB_NAME,
                started_at=started_at,
                finished_at=self.queue.clock(),
                success=False,
                stats=stats,
                error=str(exc),
            )
            raise

        await self.job_runs.record(
            self.JOB_NAME,
            started_at=started_at,
            finished_at=self.queue.clock(),
            success=True,
            stats=stats,
        )
        if stats["due"]:
            logger.info("Retry pass finished", extra_data=stats)
        return stats

    async def _lease(self, task: RetryTask) -> Optional[RetryTask]:
        now = self.queue.clock()

        def _take(current: RetryTask) -> RetryTask:
            if current.dead_letter or current.next_attempt_at > now:
                raise ConcurrencyConflictError("RetryTask", current.id, "leased elsewhere")
            return current.evolve(next_attempt_at=now + self.lease, updated_at=now)

        try:
            return await self.repository.update(task.id, _take)
        except (ConcurrencyConflictError, NotFoundError):
            return None

    async def _process(self, task: RetryTask) -> str:
        leased = await self._lease(task)
        if leased is None:
            return "skipped"

        handler = self.handlers.get(leased.kind)
        if handler is None:
            return await self._settle_failure(
                leased, LookupError(f"no handler for {leased.kind.value}"), transient=False
            )

        try:
            await handler(leased)
        except Exception as exc:
            return await self._settle_failure(leased, exc, transient=self.policy.is_transient(exc))

        await self.repository.delete(leased.id)
        logger.info(
            "Retry task succeeded",
            extra_data={"task_id": leased.id, "kind": leased.kind.value, "attempts": leased.attempts + 1},
        )
        return "succeeded"

    async def _settle_failure(self, task: RetryTask, exc: BaseException, *, transient: bool) -> str:
        now = self.queue.clock()
        attempts = task.attempts + 1
        dead = not transient or self.policy.is_exhausted(attempts)

        def _settle(current: RetryTask) -> RetryTask:
            if dead:
                return current.evolve(
                    attempts=attempts,
                    dead_letter=True,
                    last_error=str(exc),
                    updated_at=now,
                )
            return current.evolve(
                attempts=attempts,
                next_attempt_at=now + timedelta(seconds=self.policy.delay_seconds(attempts)),
                last_error=str(exc),
                updated_at=now,
            )

        settled = await self.repository.update(task.id, _settle)
        if dead:
            logger.error(
                "Retry task dead-lettered",
                extra_data={
                    "task_id": settled.id,
                    "kind": settled.kind.value,
                    "dedup_key": settled.dedup_key,
                    "attempts": settled.attempts,
                    "transient": transient,
                    "error": str(exc),
                },
            )
            return "dead_lettered"

        logger.warning(
            "Retry task failed, rescheduled",
            extra_data={
                "task_id": settled.id,
                "kind": settled.kind.value,
                "attempts": settled.attempts,
                "next_attempt_at": settled.next_attempt_at.isoformat(),
                "error": str(exc),
            },
        )
        return "rescheduled"
