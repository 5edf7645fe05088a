"""
SQLAlchemy repositories.

Each call runs in its own short session. ``update`` implements
optimistic concurrency with a version compare-and-swap; a zero-row UPDATE
means another writer committed first.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import (
    AlreadyExistsError,
    ConcurrencyConflictError,
    NotFoundError,
    RepositoryUnavailableError,
)
from app.core.logging import get_logger
from app.db.models import DepositRow, JobRunRow, RetryTaskRow, WebhookEventRow
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

logger = get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@asynccontextmanager
async def _storage_errors(operation: str):
    """Translate connection-level database failures into RepositoryUnavailableError"""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.error(
            "Repository operation failed",
            extra_data={"operation": operation, "error": str(exc.orig or exc)},
        )
        raise RepositoryUnavailableError(details={"operation": operation}) from exc


class SqlDepositRepository(DepositRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_domain(row: DepositRow) -> Deposit:
        data = dict(row.document)
        data["version"] = row.version
        return Deposit.model_validate(data)

    @staticmethod
    def _columns(deposit: Deposit) -> dict:
        return {
            "customer_id": deposit.customer_id,
            "status": deposit.status.value,
            "currency": deposit.currency,
            "hold_amount": deposit.hold_amount,
            "active_authorization_id": deposit.active_authorization_id,
            "last_authorization_at": deposit.last_authorization_at,
            "created_at": deposit.created_at,
            "document": deposit.model_dump(mode="json", exclude={"version"}),
            "version": deposit.version,
        }

    async def list(self) -> list[Deposit]:
        async with _storage_errors("deposits.list"), self._session_factory() as session:
            result = await session.execute(
                select(DepositRow).order_by(DepositRow.created_at, DepositRow.id)
            )
            return [self._to_domain(row) for row in result.scalars()]

    async def find_by_id(self, deposit_id: str) -> Optional[Deposit]:
        async with _storage_errors("deposits.find_by_id"), self._session_factory() as session:
            row = await session.get(DepositRow, deposit_id)
            return self._to_domain(row) if row is not None else None

    async def create(self, deposit: Deposit) -> Deposit:
        async with _storage_errors("deposits.create"), self._session_factory() as session:
            session.add(DepositRow(id=deposit.id, **self._columns(deposit)))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise AlreadyExistsError("Deposit", deposit.id) from exc
            return deposit

    async def update(self, deposit_id: str, updater: DepositUpdater) -> Deposit:
        async with _storage_errors("deposits.update"), self._session_factory() as session:
            row = await session.get(DepositRow, deposit_id)
            if row is None:
                raise NotFoundError("Deposit", deposit_id)
            current = self._to_domain(row)
            updated = updater(current)
            if updated is current:
                return current

            stored = updated.evolve(version=current.version + 1)
            result = await session.execute(
                update(DepositRow)
                .where(DepositRow.id == deposit_id, DepositRow.version == current.version)
                .values(**self._columns(stored))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise ConcurrencyConflictError("Deposit", deposit_id)
            await session.commit()
            return stored


class SqlRetryTaskRepository(RetryTaskRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_domain(row: RetryTaskRow) -> RetryTask:
        return RetryTask(
            id=row.id,
            kind=row.kind,
            dedup_key=row.dedup_key,
            payload=row.payload or {},
            attempts=row.attempts,
            next_attempt_at=_aware(row.next_attempt_at),
            dead_letter=row.dead_letter,
            last_error=row.last_error,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            version=row.version,
        )

    @staticmethod
    def _columns(task: RetryTask) -> dict:
        return {
            "kind": task.kind.value,
            "dedup_key": task.dedup_key,
            "live_dedup_key": None if task.dead_letter else task.dedup_key,
            "payload": task.payload,
            "attempts": task.attempts,
            "next_attempt_at": task.next_attempt_at,
            "dead_letter": task.dead_letter,
            "last_error": task.last_error[:1000] if task.last_error else None,
            "created_at": task.created_at,
            "updated_at": task.updated_at,
            "version": task.version,
        }

    async def add(self, task: RetryTask) -> RetryTask:
        async with _storage_errors("retry_tasks.add"), self._session_factory() as session:
            session.add(RetryTaskRow(id=task.id, **self._columns(task)))
            try:
                await session.commit()
                return task
            except IntegrityError:
                await session.rollback()

        existing = await self.find_live_by_dedup_key(task.dedup_key)
        if existing is None:
            raise AlreadyExistsError("RetryTask", task.id)
        return existing

    async def find_by_id(self, task_id: str) -> Optional[RetryTask]:
        async with _storage_errors("retry_tasks.find_by_id"), self._session_factory() as session:
            row = await session.get(RetryTaskRow, task_id)
            return self._to_domain(row) if row is not None else None

    async def find_live_by_dedup_key(self, dedup_key: str) -> Optional[RetryTask]:
        async with _storage_errors("retry_tasks.find_live"), self._session_factory() as session:
            result = await session.execute(
                select(RetryTaskRow).where(RetryTaskRow.live_dedup_key == dedup_key)
            )
            row = result.scalar_one_or_none()
            return self._to_domain(row) if row is not None else None

    async def list_due(self, now: datetime, limit: int) -> list[RetryTask]:
        async with _storage_errors("retry_tasks.list_due"), self._session_factory() as session:
            result = await session.execute(
                select(RetryTaskRow)
                .where(
                    RetryTaskRow.dead_letter.is_(False),
                    RetryTaskRow.next_attempt_at <= now,
                )
                .order_by(RetryTaskRow.next_attempt_at)
                .limit(limit)
            )
            return [self._to_domain(row) for row in result.scalars()]

    async def list_dead_letters(self, limit: int = 100) -> list[RetryTask]:
        async with _storage_errors("retry_tasks.list_dead"), self._session_factory() as session:
            result = await session.execute(
                select(RetryTaskRow)
                .where(RetryTaskRow.dead_letter.is_(True))
                .order_by(RetryTaskRow.updated_at)
                .limit(limit)
            )
            return [self._to_domain(row) for row in result.scalars()]

    async def update(self, task_id: str, updater: RetryTaskUpdater) -> RetryTask:
        async with _storage_errors("retry_tasks.update"), self._session_factory() as session:
            row = await session.get(RetryTaskRow, task_id)
            if row is None:
                raise NotFoundError("RetryTask", task_id)
            current = self._to_domain(row)
            updated = updater(current)
            if updated is current:
                return current

            stored = updated.evolve(version=current.version + 1)
            result = await session.execute(
                update(RetryTaskRow)
                .where(RetryTaskRow.id == task_id, RetryTaskRow.version == current.version)
                .values(**self._columns(stored))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise ConcurrencyConflictError("RetryTask", task_id)
            await session.commit()
            return stored

    async def delete(self, task_id: str) -> bool:
        async with _storage_errors("retry_tasks.delete"), self._session_factory() as session:
            result = await session.execute(
                delete(RetryTaskRow).where(RetryTaskRow.id == task_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def _count(self, dead_letter: bool) -> int:
        async with _storage_errors("retry_tasks.count"), self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(RetryTaskRow)
                .where(RetryTaskRow.dead_letter.is_(dead_letter))
            )
            return int(result.scalar_one())

    async def count_pending(self) -> int:
        return await self._count(False)

    async def count_dead_letters(self) -> int:
        return await self._count(True)


class SqlWebhookEventRepository(WebhookEventRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def is_processed(self, event_id: str) -> bool:
        async with _storage_errors("webhook_events.is_processed"), self._session_factory() as session:
            row = await session.get(WebhookEventRow, event_id)
            return row is not None

    async def mark_processed(self, event_id: str, event_type: str, processed_at: datetime) -> bool:
        # INSERT אופטימיסטי - PK כפול אומר שהאירוע כבר נרשם
        async with _storage_errors("webhook_events.mark_processed"), self._session_factory() as session:
            session.add(WebhookEventRow(
                event_id=event_id,
                event_type=event_type,
                processed_at=processed_at,
            ))
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def prune(self, older_than: datetime) -> int:
        async with _storage_errors("webhook_events.prune"), self._session_factory() as session:
            result = await session.execute(
                delete(WebhookEventRow).where(WebhookEventRow.processed_at < older_than)
            )
            await session.commit()
            return result.rowcount or 0


class SqlJobRunRepository(JobRunRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_domain(row: JobRunRow) -> JobRun:
        return JobRun(
            job_name=row.job_name,
            last_run_at=_aware(row.last_run_at),
            last_finished_at=_aware(row.last_finished_at),
            last_success=row.last_success,
            last_stats=row.last_stats or {},
            last_error=row.last_error,
            total_runs=row.total_runs or 0,
            total_failures=row.total_failures or 0,
        )

    async def get(self, job_name: str) -> Optional[JobRun]:
        async with _storage_errors("job_runs.get"), self._session_factory() as session:
            row = await session.get(JobRunRow, job_name)
            return self._to_domain(row) if row is not None else None

    async def list(self) -> list[JobRun]:
        async with _storage_errors("job_runs.list"), self._session_factory() as session:
            result = await session.execute(select(JobRunRow).order_by(JobRunRow.job_name))
            return [self._to_domain(row) for row in result.scalars()]

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
        async with _storage_errors("job_runs.record"), self._session_factory() as session:
            row = await session.get(JobRunRow, job_name)
            if row is None:
                row = JobRunRow(job_name=job_name, total_runs=0, total_failures=0)
                session.add(row)
            row.last_run_at = started_at
            row.last_finished_at = finished_at
            row.last_success = success
            row.last_stats = dict(stats)
            row.last_error = error[:1000] if error else None
            row.total_runs = (row.total_runs or 0) + 1
            row.total_failures = (row.total_failures or 0) + (0 if success else 1)
            await session.commit()
            return self._to_domain(row)


def build_sql_repositories(session_factory: SessionFactory) -> Repositories:
    return Repositories(
        deposits=SqlDepositRepository(session_factory),
        retry_tasks=SqlRetryTaskRepository(session_factory),
        webhook_events=SqlWebhookEventRepository(session_factory),
        job_runs=SqlJobRunRepository(session_factory),
    )
