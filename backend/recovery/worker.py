import logging
from datetime import timedelta
from typing import Any

from arq import cron

from recovery.core.config import settings
from recovery.core.database import new_session
from recovery.models.shared import utc_now
from recovery.repositories.event_repository import EventRepository
from recovery.services.job_queue import JobQueue
from recovery.services.scheduler import RecoveryScheduler
from recovery.services.worker_pool import WorkerPool
from recovery.tasks import redis_settings

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx["worker_pool"] = WorkerPool()
    logger.info("Recovery worker started")


async def run_scheduler_task(ctx: dict[str, Any]) -> int:
    """Background task: plan due reminders and expire exhausted cases.

    Runs every minute.
    """
    db = new_session()
    try:
        result = RecoveryScheduler(db).run_scan()
        return result.actions_planned + result.cases_expired
    finally:
        db.close()


async def drain_job_queue_task(ctx: dict[str, Any]) -> int:
    """Background task: requeue stale jobs, then run due jobs until none are left.

    Runs every minute and after each accepted webhook.
    """
    db = new_session()
    try:
        requeued = JobQueue(db).requeue_stale()
        if requeued > 0:
            logger.warning("Requeued %d stale job(s)", requeued)
    finally:
        db.close()

    pool: WorkerPool = ctx.get("worker_pool") or WorkerPool()
    count = await pool.run_until_idle()
    if count > 0:
        logger.info("Processed %d job(s)", count)
    return count


async def purge_expired_events_task(ctx: dict[str, Any]) -> int:
    """Background task: delete processed events past the retention window.

    Runs daily.
    """
    db = new_session()
    try:
        cutoff = utc_now() - timedelta(days=settings.EVENT_RETENTION_DAYS)
        count = EventRepository(db).delete_processed_before(cutoff)
        if count > 0:
            logger.info("Purged %d event(s) older than %s", count, cutoff.isoformat())
        return count
    finally:
        db.close()


class WorkerSettings:
    functions = [
        run_scheduler_task,
        drain_job_queue_task,
        purge_expired_events_task,
    ]
    cron_jobs = [
        cron(run_scheduler_task, second={0}),  # every minute
        cron(drain_job_queue_task, second={30}),  # every minute
        cron(purge_expired_events_task, hour={3}, minute={0}),  # daily
    ]
    on_startup = startup
    redis_settings = redis_settings
