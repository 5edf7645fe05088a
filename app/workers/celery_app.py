"""
Celery Application Configuration

Configuration is applied lazily from Settings the first time Celery loads it,
so importing this module does not read the environment.
"""
from celery import Celery

from app.core.config import Settings, get_settings

celery_app = Celery(
    "deposit_hold",
    include=["app.workers.tasks"]
)


def build_beat_schedule(settings: Settings) -> dict:
    """Beat schedule for periodic tasks"""
    return {
        "reauthorize-expiring-holds": {
            "task": "app.workers.tasks.run_reauthorization",
            "schedule": float(settings.REAUTH_INTERVAL_SECONDS),
        },
        "process-retry-queue": {
            "task": "app.workers.tasks.process_retry_queue",
            "schedule": float(settings.RETRY_INTERVAL_SECONDS),
        },
        "cleanup-old-webhook-events-daily": {
            "task": "app.workers.tasks.cleanup_old_webhook_events",
            "schedule": 86400.0,  # 24 hours
        },
    }


def configure_celery(app: Celery, settings: Settings) -> None:
    app.conf.update(
        broker_url=settings.CELERY_BROKER_URL,
        result_backend=settings.CELERY_RESULT_BACKEND,
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        task_time_limit=300,  # 5 minutes
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        beat_schedule=build_beat_schedule(settings),
    )


@celery_app.on_configure.connect
def _configure_from_settings(sender: Celery, **kwargs) -> None:
    configure_celery(sender, get_settings())
