"""
Reauthorization Scheduler - keeps holds from silently expiring.

Gateway holds lapse after GATEWAY_HOLD_EXPIRY_HOURS. Each tick replaces every
hold older than REAUTH_THRESHOLD_HOURS with a fresh one. A deposit is claimed
against the authorization the scan observed, so a concurrent tick, a retry
task or a capture can never produce a second new authorization.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from app.core.exceptions import ConflictError
from app.core.logging import get_logger, log_async_operation
from app.db.repositories.base import JobRunRepository
from app.domain.models import Deposit, RetryTask, RetryTaskKind, utcnow
from app.domain.services.deposit_service import DepositService
from app.domain.services.retry_queue import RetryQueue, reauthorization_dedup_key
from app.state_machine.states import DepositStatus

logger = get_logger(__name__)


class ReauthorizationScheduler:
    JOB_NAME = "reauthorization"

    def __init__(
        self,
        deposits: DepositService,
        retry_queue: RetryQueue,
        job_runs: JobRunRepository,
        *,
        threshold_hours: int = 144,
        expiry_hours: int = 168,
        clock: Callable[[], datetime] = utcnow,
    ):
        if threshold_hours >= expiry_hours:
            raise ValueError("reauthorization threshold must be shorter than the hold expiry window")
        self.deposits = deposits
        self.retry_queue = retry_queue
        self.job_runs = job_runs
        self.threshold = timedelta(hours=threshold_hours)
        self.clock = clock
        self._stop_requested = False

    @classmethod
    def from_settings(cls, deposits, retry_queue, job_runs, settings) -> "ReauthorizationScheduler":
        return cls(
            deposits,
            retry_queue,
            job_runs,
            threshold_hours=settings.REAUTH_THRESHOLD_HOURS,
            expiry_hours=settings.GATEWAY_HOLD_EXPIRY_HOURS,
        )

    def request_stop(self) -> None:
        """Finish the deposit in flight and claim nothing more"""
        self._stop_requested = True

    def is_due(self, deposit: Deposit, now: datetime) -> bool:
        return (
            deposit.status == DepositStatus.AUTHORIZED
            and deposit.last_authorization_at is not None
            and now - deposit.last_authorization_at >= self.threshold
        )

    @log_async_operation("reauthorization_tick")
    async def tick(self) -> dict[str, int]:
        started_at = self.clock()
        stats = {"scanned": 0, "eligible": 0, "reauthorized": 0, "failures": 0, "deferred": 0, "skipped": 0}
        claimed_this_tick: set[str] = set()
        try:
            deposits = await self.deposits.list()
            stats["scanned"] = len(deposits)
            candidates = [d for d in deposits if self.is_due(d, started_at)]
            stats["eligible"] = len(candidates)

            for deposit in candidates:
                if self._stop_requested:
                    logger.info("Reauthorization tick stopping early", extra_data=stats)
                    break
                if deposit.id in claimed_this_tick:
                    stats["skipped"] += 1
                    continue
                # a queued retry owns this deposit until it settles
                if await self.retry_queue.has_live_task(reauthorization_dedup_key(deposit.id)):
                    stats["skipped"] += 1
                    continue
                try:
                    claimed = await self.deposits.claim_for_reauthorization(deposit)
                except ConflictError as exc:
                    logger.info(
                        "Deposit not claimable for reauthorization",
                        extra_data={"deposit_id": deposit.id, "reason": exc.message},
                    )
                    stats["skipped"] += 1
                    continue
                claimed_this_tick.add(deposit.id)
                stats[await self._reauthorize(claimed)] += 1
        except Exception as exc:
            logger.error("Reauthorization tick failed", extra_data={"error": str(exc), **stats})
            await self.job_runs.record(
                self.JOB_NAME,
                started_at=started_at,
                finished_at=self.clock(),
                success=False,
                stats=stats,
                error=str(exc),
            )
            raise

        await self.job_runs.record(
            self.JOB_NAME,
            started_at=started_at,
            finished_at=self.clock(),
            success=True,
            stats=stats,
        )
        logger.info("Reauthorization tick finished", extra_data=stats)
        return stats

    async def _reauthorize(self, claimed: Deposit) -> str:
        try:
            updated = await self.deposits.reauthorize(claimed.id, claimed.claim_token)
        except Exception as exc:
            if not self.retry_queue.policy.is_transient(exc):
                logger.error(
                    "Reauthorization failed",
                    extra_data={"deposit_id": claimed.id, "error": str(exc)},
                )
                return "failures"
            await self.retry_queue.enqueue(
                RetryTaskKind.REAUTHORIZATION,
                {"deposit_id": claimed.id},
                reauthorization_dedup_key(claimed.id),
                error=exc,
            )
            return "deferred"

        if updated.status == DepositStatus.FAILED:
            return "failures"
        return "reauthorized"

    async def retry_task(self, task: RetryTask) -> None:
        """Retry-queue handler; errors propagate so the processor can reschedule"""
        deposit_id = task.payload["deposit_id"]
        deposit = await self.deposits.repository.find_by_id(deposit_id)
        now = self.clock()
        if deposit is None or not self.is_due(deposit, now):
            logger.info(
                "Reauthorization retry no longer needed",
                extra_data={"deposit_id": deposit_id, "task_id": task.id},
            )
            return

        claimed = await self.deposits.claim_for_reauthorization(deposit)
        await self.deposits.reauthorize(deposit_id, claimed.claim_token)
