"""
בדיקות ל-workers - jobs, לולאות תקופתיות ו-Celery.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from celery import Celery

from app.workers.celery_app import build_beat_schedule, configure_celery
from app.workers.jobs import prune_webhook_events_job, reauthorization_job, retry_queue_job
from app.workers.loop import WEBHOOK_PRUNE_INTERVAL_SECONDS, PeriodicLoop, build_loops, run_loops
from app.workers.tasks import cleanup_old_webhook_events, process_retry_queue, run_reauthorization


# ============================================================================
# Jobs
# ============================================================================


class TestJobs:
    """ה-jobs לא מעבירים שגיאות הלאה - רק מתעדים."""

    @pytest.mark.unit
    async def test_reauthorization_job_returns_stats(self, container):
        result = await reauthorization_job(container)

        assert result["scanned"] == 0
        run = (await container.repositories.job_runs.list())[0]
        assert run.job_name == "reauthorization"
        assert run.last_success is True

    @pytest.mark.unit
    async def test_reauthorization_job_swallows_failure(self, container):
        with patch.object(container.scheduler, "tick", new_callable=AsyncMock, side_effect=RuntimeError("boom")):
            result = await reauthorization_job(container)

        assert result == {"error": "boom"}

    @pytest.mark.unit
    async def test_retry_queue_job_swallows_failure(self, container):
        with patch.object(
            container.retry_processor, "run_once", new_callable=AsyncMock, side_effect=RuntimeError("down")
        ):
            result = await retry_queue_job(container)

        assert result == {"error": "down"}

    @pytest.mark.unit
    async def test_prune_job_uses_retention(self, container):
        now = datetime.now(timezone.utc)
        events = container.repositories.webhook_events
        await events.mark_processed("evt_old", "payment_intent.canceled", now - timedelta(days=45))
        await events.mark_processed("evt_recent", "payment_intent.canceled", now - timedelta(days=2))

        result = await prune_webhook_events_job(container)

        assert result == {"deleted": 1}
        assert await events.is_processed("evt_recent")
        assert not await events.is_processed("evt_old")


# ============================================================================
# PeriodicLoop
# ============================================================================


class TestPeriodicLoop:
    """לולאה תקופתית - רצה עד stop ושורדת כשלים."""

    @pytest.mark.unit
    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PeriodicLoop("bad", AsyncMock(), 0)

    @pytest.mark.unit
    async def test_runs_until_stopped(self):
        loop: PeriodicLoop

        async def _job():
            if loop.runs == 2:
                loop.stop()

        loop = PeriodicLoop("counter", _job, 0.01)
        await loop.run()

        assert loop.runs == 3
        assert loop.stopped

    @pytest.mark.unit
    async def test_failing_iteration_does_not_kill_loop(self):
        calls = []
        loop: PeriodicLoop

        async def _job():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")
            loop.stop()

        loop = PeriodicLoop("flaky", _job, 0.01)
        await loop.run()

        assert len(calls) == 2

    @pytest.mark.unit
    def test_on_stop_called_once(self):
        on_stop = []
        loop = PeriodicLoop("x", AsyncMock(), 1.0, on_stop=lambda: on_stop.append(1))

        loop.stop()
        loop.stop()

        assert on_stop == [1]

    @pytest.mark.unit
    async def test_build_loops(self, container):
        loops = build_loops(container)

        assert [loop.name for loop in loops] == ["reauthorization", "retry_queue", "webhook_event_cleanup"]
        assert loops[0].interval_seconds == container.settings.REAUTH_INTERVAL_SECONDS
        assert loops[1].interval_seconds == container.settings.RETRY_INTERVAL_SECONDS
        assert loops[2].interval_seconds == WEBHOOK_PRUNE_INTERVAL_SECONDS

    @pytest.mark.unit
    async def test_stopping_loops_stops_components(self, container):
        loops = build_loops(container)

        for loop in loops:
            loop.stop()

        assert container.scheduler._stop_requested
        assert container.retry_processor._stop_requested

    @pytest.mark.unit
    async def test_run_loops_returns_when_all_stopped(self, container):
        loops: list[PeriodicLoop] = []

        async def _job():
            for loop in loops:
                loop.stop()

        loops.extend([PeriodicLoop("a", _job, 0.01), PeriodicLoop("b", _job, 0.01)])

        await run_loops(container, loops)

        assert all(loop.stopped for loop in loops)


# ============================================================================
# Celery
# ============================================================================


class TestCeleryConfiguration:
    """תצורת Celery נבנית מ-Settings."""

    @pytest.mark.unit
    def test_beat_schedule(self, settings):
        schedule = build_beat_schedule(settings)

        assert schedule["reauthorize-expiring-holds"] == {
            "task": "app.workers.tasks.run_reauthorization",
            "schedule": float(settings.REAUTH_INTERVAL_SECONDS),
        }
        assert schedule["process-retry-queue"]["task"] == "app.workers.tasks.process_retry_queue"
        assert schedule["cleanup-old-webhook-events-daily"]["schedule"] == 86400.0

    @pytest.mark.unit
    def test_configure_celery(self, settings):
        app = Celery("test")

        configure_celery(app, settings)

        assert app.conf.broker_url == settings.CELERY_BROKER_URL
        assert app.conf.task_acks_late is True
        assert app.conf.worker_prefetch_multiplier == 1
        assert set(app.conf.beat_schedule) == {
            "reauthorize-expiring-holds",
            "process-retry-queue",
            "cleanup-old-webhook-events-daily",
        }


class TestCeleryTasks:
    """הטאסקים רצים סינכרונית ב-event loop משלהם."""

    @pytest.fixture(autouse=True)
    def _celery_settings(self, settings):
        # גם טעינת התצורה של Celery קוראת ל-get_settings
        with patch("app.workers.celery_app.get_settings", return_value=settings):
            yield

    @pytest.mark.unit
    def test_run_reauthorization_task(self, settings):
        with patch("app.workers.tasks.get_settings", return_value=settings):
            result = run_reauthorization()

        assert result["scanned"] == 0

    @pytest.mark.unit
    def test_process_retry_queue_task(self, settings):
        with patch("app.workers.tasks.get_settings", return_value=settings):
            result = process_retry_queue()

        assert "error" not in result

    @pytest.mark.unit
    def test_cleanup_task(self, settings):
        with patch("app.workers.tasks.get_settings", return_value=settings):
            result = cleanup_old_webhook_events()

        assert result == {"deleted": 0}
