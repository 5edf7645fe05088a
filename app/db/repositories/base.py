"""
ממשקי אחסון - Dependency Inversion.

כל backend (זיכרון, SQLAlchemy) חייב לממש את הממשקים האלה.
שכבת הלוגיקה העסקית תלויה רק בממשק ולא במימוש ספציפי.

``update(id, updater)`` הוא מנגנון הסנכרון היחיד: read-modify-write אטומי.
ה-updater מקבל את הרשומה הנוכחית ומחזיר רשומה חדשה; ה-commit מצליח רק אם
אף כותב אחר לא ביצע commit מאז הקריאה (optimistic concurrency).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from app.domain.models import Deposit, JobRun, RetryTask

DepositUpdater = Callable[[Deposit], Deposit]
RetryTaskUpdater = Callable[[RetryTask], RetryTask]


class DepositRepository(ABC):
    """Durable store of Deposit records"""

    @abstractmethod
    async def list(self) -> list[Deposit]:
        """All deposits, oldest first"""

    @abstractmethod
    async def find_by_id(self, deposit_id: str) -> Optional[Deposit]:
        """The deposit, or None when absent"""

    @abstractmethod
    async def create(self, deposit: Deposit) -> Deposit:
        """
        Insert a new deposit.

        Raises:
            AlreadyExistsError: when the id is taken.
        """

    @abstractmethod
    async def update(self, deposit_id: str, updater: DepositUpdater) -> Deposit:
        """
        Atomic read-modify-write.

        The updater may raise to abort without writing. When it returns the
        same object unchanged nothing is written and the current record is
        returned.

        Raises:
            NotFoundError: the deposit does not exist.
            ConcurrencyConflictError: another writer committed since the read.
        """


class RetryTaskRepository(ABC):
    """Durable store of RetryTask records"""

    @abstractmethod
    async def add(self, task: RetryTask) -> RetryTask:
        """
        Insert a task unless a live (not dead-lettered) task with the same
        dedup_key exists, in which case the existing task is returned.
        """

    @abstractmethod
    async def find_by_id(self, task_id: str) -> Optional[RetryTask]:
        ...

    @abstractmethod
    async def find_live_by_dedup_key(self, dedup_key: str) -> Optional[RetryTask]:
        ...

    @abstractmethod
    async def list_due(self, now: datetime, limit: int) -> list[RetryTask]:
        """Live tasks with next_attempt_at <= now, earliest first"""

    @abstractmethod
    async def list_dead_letters(self, limit: int = 100) -> list[RetryTask]:
        ...

    @abstractmethod
    async def update(self, task_id: str, updater: RetryTaskUpdater) -> RetryTask:
        """Same contract as DepositRepository.update"""

    @abstractmethod
    async def delete(self, task_id: str) -> bool:
        """True when a row was removed"""

    @abstractmethod
    async def count_pending(self) -> int:
        ...

    @abstractmethod
    async def count_dead_letters(self) -> int:
        ...


class WebhookEventRepository(ABC):
    """Dedup store of processed gateway event ids"""

    @abstractmethod
    async def is_processed(self, event_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_processed(self, event_id: str, event_type: str, processed_at: datetime) -> bool:
        """Record the event; False when it was already recorded"""

    @abstractmethod
    async def prune(self, older_than: datetime) -> int:
        """Delete records processed before ``older_than``; returns the count"""


class JobRunRepository(ABC):
    """Last-run outcome per periodic job (health surface)"""

    @abstractmethod
    async def get(self, job_name: str) -> Optional[JobRun]:
        ...

    @abstractmethod
    async def list(self) -> list[JobRun]:
        ...

    @abstractmethod
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
        ...


@dataclass
class Repositories:
    """Every store the core needs; built once at startup and injected"""

    deposits: DepositRepository
    retry_tasks: RetryTaskRepository
    webhook_events: WebhookEventRepository
    job_runs: JobRunRepository
