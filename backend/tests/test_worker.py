"""Tests for worker background tasks and cron job registration."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from recovery.core.config import settings
from recovery.models.event import Event
from recovery.models.shared import utc_now
from recovery.services.scheduler import ScanResult
from recovery.worker import (
    WorkerSettings,
    drain_job_queue_task,
    purge_expired_events_task,
    run_scheduler_task,
    startup,
)


class TestRunSchedulerTask:
    @pytest.mark.asyncio
    async def test_returns_planned_and_expired(self):
        """Test the task reports how much work the scan produced."""
        mock_scheduler = MagicMock()
        mock_scheduler.run_scan.return_value = ScanResult(
            cases_scanned=5, actions_planned=2, cases_expired=1
        )

        with patch("recovery.worker.RecoveryScheduler", return_value=mock_scheduler) as mock_cls:
            result = await run_scheduler_task({})

        assert result == 3
        mock_scheduler.run_scan.assert_called_once()
        assert mock_cls.call_args[0][0] is not None  # DB session was passed

    @pytest.mark.asyncio
    async def test_returns_zero_when_idle(self):
        """Test an empty scan returns 0."""
        mock_scheduler = MagicMock()
        mock_scheduler.run_scan.return_value = ScanResult()

        with patch("recovery.worker.RecoveryScheduler", return_value=mock_scheduler):
            assert await run_scheduler_task({}) == 0


class TestDrainJobQueueTask:
    @pytest.mark.asyncio
    async def test_requeues_stale_then_drains(self):
        """Test stale jobs are recovered before the pool drains the queue."""
        mock_queue = MagicMock()
        mock_queue.requeue_stale.return_value = 2
        mock_pool = MagicMock()
        mock_pool.run_until_idle = AsyncMock(return_value=4)

        with patch("recovery.worker.JobQueue", return_value=mock_queue):
            result = await drain_job_queue_task({"worker_pool": mock_pool})

        assert result == 4
        mock_queue.requeue_stale.assert_called_once()
        mock_pool.run_until_idle.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_creates_pool_when_missing(self):
        """Test the task works without a pool prepared at startup."""
        mock_pool = MagicMock()
        mock_pool.run_until_idle = AsyncMock(return_value=0)

        with patch("recovery.worker.WorkerPool", return_value=mock_pool) as mock_cls:
            result = await drain_job_queue_task({})

        assert result == 0
        mock_cls.assert_called_once()


class TestPurgeExpiredEventsTask:
    @pytest.mark.asyncio
    async def test_purges_only_old_processed_events(self, db_session, make_event):
        """Test processed events past retention are deleted and the rest kept."""
        old_received = utc_now() - timedelta(days=settings.EVENT_RETENTION_DAYS + 1)
        old_processed = make_event("evt_old")
        old_processed.received_at = old_received
        old_processed.processed_at = old_received
        old_unprocessed = make_event("evt_stuck")
        old_unprocessed.received_at = old_received
        recent = make_event("evt_new")
        recent.processed_at = utc_now()
        db_session.commit()

        result = await purge_expired_events_task({})

        assert result == 1
        db_session.expire_all()
        remaining = {event.provider_event_id for event in db_session.query(Event).all()}
        assert remaining == {"evt_stuck", "evt_new"}


class TestStartup:
    @pytest.mark.asyncio
    async def test_startup_prepares_pool(self):
        """Test startup stores a worker pool in the context."""
        ctx: dict = {}
        with patch("recovery.worker.WorkerPool") as mock_cls:
            await startup(ctx)

        assert ctx["worker_pool"] is mock_cls.return_value


class TestWorkerSettings:
    def test_functions_registered(self):
        """Test every task is registered with the worker."""
        assert run_scheduler_task in WorkerSettings.functions
        assert drain_job_queue_task in WorkerSettings.functions
        assert purge_expired_events_task in WorkerSettings.functions

    def test_cron_jobs_registered(self):
        """Test every task runs on a schedule."""
        cron_funcs = [job.coroutine for job in WorkerSettings.cron_jobs]
        assert run_scheduler_task in cron_funcs
        assert drain_job_queue_task in cron_funcs
        assert purge_expired_events_task in cron_funcs

    def test_startup_hook(self):
        """Test the worker prepares its pool on startup."""
        assert WorkerSettings.on_startup is startup
