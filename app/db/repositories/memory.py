"""
In-memory repositories.

Used by tests and single-process development. Every method commits
synchronously between awaits, so within one event loop an ``update`` is
atomic; the version check still guards against an updater that awaited
on something else holding a stale record.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from app.core.exceptions import AlreadyExistsError, ConcurrencyConflictError, NotFoundError
from app.db.repositories.base import (
    DepositRepository,
    DepositUpdater,
    JobRunRepository,
    Repositories,
    RetryTaskRepository,
    RetryTaskUpdater,
    WebhookEventRepository,
)
from app.domain.models import Deposit, JobRun, RetryTask


class InMemoryDepositRepository(DepositRepository):
    def __init__(self) -> None:
        self._rows: dict[str, Deposit] = {}

    async def list(self) -> list[Deposit]:
        return sorted(self._rows.values(), key=lambda d: d.created_at)

    async def find_by_id(self, deposit_id: str) -> Optional[Deposit]:
        return self._rows.get(deposit_id)

    async def create(self, deposit: Deposit) -> Deposit:
        if deposit.id in self._rows:
            raise AlreadyExistsError("Deposit", deposit.id)
        self._rows[deposit.id] = deposit
        return deposit

    async def update(self, deposit_id: str, updater: DepositUpdater) -> Deposit:
        current = self._rows.get(deposit_id)
        if current is None:
            raise NotFoundError("Deposit", deposit_id)
        updated = updater(current)
        if updated is current:
            return current
        if self._rows.get(deposit_id) is not current:
            raise ConcurrencyConflictError("Deposit", deposit_id)
        stored = updated.evolve(version=current.version + 1)
        self._rows[deposit_id] = stored
        return stored


class InMemoryRetryTaskRepository(RetryTaskRepository):
    def __init__(self) -> None:
        self._rows: dict[str, RetryTask] = {}

    async def add(self, task: RetryTask) -> RetryTask:
        existing = await self.find_live_by_dedup_key(task.dedup_key)
        if existing is not None:
            return existing
        if task.id in self._rows:
            raise AlreadyExistsError("RetryTask", task.id)
        self._rows[task.id] = task
        return task

    async def find_by_id(self, task_id: str) -> Optional[RetryTask]:
        return self._rows.get(task_id)

    async def find_live_by_dedup_key(self, dedup_key: str) -> Optional[RetryTask]:
        for task in self._rows.values():
            if task.dedup_key == dedup_key and not task.dead_letter:
                return task
        return None

    async def list_due(self, now: datetime, limit: int) -> list[RetryTask]:
        due = [
            task for task in self._rows.values()
            if not task.dead_letter and task.next_attempt_at <= now
        ]
        due.sort(key=lambda t: t.next_attempt_at)
        return due[:limit]

    async def list_dead_letters(self, limit: int = 100) -> list[RetryTask]:
        dead = [task for task in self._rows.values() if task.dead_letter]
        dead.sort(key=lambda t: t.updated_at)
        return dead[:limit]

    async def update(self, task_id: str, updater: RetryTaskUpdater) -> RetryTask:
        current = self._rows.get(task_id)
        if current is None:
            raise NotFoundError("RetryTask", task_id)
        updated = updater(current)
        if updated is current:
            return current
        if self._rows.get(task_id) is not current:
            raise ConcurrencyConflictError("RetryTask", task_id)
        stored = updated.evolve(version=current.version + 1)
        self._rows[task_id] = stored
        return stored

    async def delete(self, task_id: str) -> bool:
        return self._rows.pop(task_id, None) is not None

    async def count_pending(self) -> int:
        return sum(1 for task in self._rows.values() if not task.dead_letter)

    async def count_dead_letters(self) -> int:
        return sum(1 for task in self._rows.values() if task.dead_letter)


class InMemoryWebhookEventRepository(WebhookEventRepository):
    def __init__(self) -> None:
        self._events: dict[str, tuple[str, datetime]] = {}

    async def is_processed(self, event_id: str) -> bool:
        return event_id in self._events

    async def mark_processed(self, event_id: str, event_type: str, processed_at: datetime) -> bool:
        if event_id in self._events:
            return False
        self._events[event_id] = (event_type, processed_at)
        return True

    async def prune(self, older_than: datetime) -> int:
        stale = [eid for eid, (_, at) in self._events.items() if at < older_than]
        for eid in stale:
            del self._events[eid]
        return len(stale)


class InMemoryJobRunRepository(JobRunRepository):
    def __init__(self) -> None:
        self._runs: dict[str, JobRun] = {}

    async def get(self, job_name: str) -> Optional[JobRun]:
        return self._runs.get(job_name)

    async def list(self) -> list[JobRun]:
        return sorted(self._runs.values(), key=lambda r: r.job_name)

    async def record(
        self,
        job_name: str,
        *,
        started_at: datetime,
        finished_at: datetime,
        success: bool,
        stats: dict,
        error: Optional[str] = None,
    ) -> JobRun:
        previous = self._runs.get(job_name) or JobRun(job_name=job_name)
        run = previous.evolve(
            last_run_at=started_at,
            last_finished_at=finished_at,
            last_success=success,
            last_stats=dict(stats),
            last_error=error,
            total_runs=previous.total_runs + 1,
            total_failures=previous.total_failures + (0 if success else 1),
        )
        self._runs[job_name] = run
        return run


def build_memory_repositories() -> Repositories:
    return Repositories(
        deposits=InMemoryDepositRepository(),
        retry_tasks=InMemoryRetryTaskRepository(),
        webhook_events=InMemoryWebhookEventRepository(),
        job_runs=InMemoryJobRunRepository(),
    )
