"""
שירות בדיקת בריאות - תמונת מצב לקריאה בלבד של ליבת הפיקדונות.

- retry_queue: מספר משימות ממתינות ו-dead letters
- jobs: תוצאת הריצה האחרונה של כל job תקופתי
- storage: האם שכבת האחסון זמינה

סטטוס degraded כשיש dead letter כלשהו, כשהריצה האחרונה של ה-scheduler
נכשלה, או כשהאחסון לא זמין.
"""
from typing import Any

from app.core.exceptions import RepositoryUnavailableError
from app.core.logging import get_logger
from app.db.repositories.base import JobRunRepository, RetryTaskRepository
from app.domain.models import JobRun
from app.domain.services.reauthorization_service import ReauthorizationScheduler

logger = get_logger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"
# הודעת שגיאה מסוננת - ללא חשיפת פרטי תשתית
_ERROR_STORAGE = "error: storage_unavailable"


def _job_view(run: JobRun) -> dict[str, Any]:
    return {
        "last_run_at": run.last_run_at.isoformat() if run.last_run_at else None,
        "last_finished_at": run.last_finished_at.isoformat() if run.last_finished_at else None,
        "last_success": run.last_success,
        "last_stats": run.last_stats,
        "last_error": run.last_error,
        "total_runs": run.total_runs,
        "total_failures": run.total_failures,
    }


class HealthService:
    def __init__(self, retry_tasks: RetryTaskRepository, job_runs: JobRunRepository):
        self.retry_tasks = retry_tasks
        self.job_runs = job_runs

    async def snapshot(self) -> dict[str, Any]:
        try:
            pending = await self.retry_tasks.count_pending()
            dead = await self.retry_tasks.count_dead_letters()
            runs = await self.job_runs.list()
        except RepositoryUnavailableError as exc:
            logger.warning("בדיקת בריאות אחסון נכשלה", extra_data={"error": exc.message})
            return {
                "status": STATUS_DEGRADED,
                "checks": {"storage": _ERROR_STORAGE},
                "retry_queue": None,
                "jobs": {},
            }

        jobs = {run.job_name: _job_view(run) for run in runs}
        scheduler = next((r for r in runs if r.job_name == ReauthorizationScheduler.JOB_NAME), None)
        degraded = dead > 0 or (scheduler is not None and scheduler.last_success is False)

        return {
            "status": STATUS_DEGRADED if degraded else STATUS_HEALTHY,
            "checks": {"storage": _CHECK_OK},
            "retry_queue": {"pending": pending, "dead_letter": dead},
            "jobs": jobs,
        }
