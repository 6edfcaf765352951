"""Bounded pool that drains the job queue."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from recovery.core import database
from recovery.core.config import settings
from recovery.core.errors import PermanentError, is_permanent
from recovery.core.retry import RetryExecutor, RetryPolicy
from recovery.models.job import JobStatus, JobType
from recovery.models.shared import utc_now
from recovery.services.billing_client import BillingClient
from recovery.services.job_handlers import HandlerContext, JobDefinition, get_definition
from recovery.services.job_queue import JobQueue
from recovery.services.notifier import Notifier

logger = logging.getLogger(__name__)


def describe_error(exc: BaseException | None) -> str:
    if exc is None:
        return "unknown error"
    return f"{type(exc).__name__}: {exc}"[:2000]


class WorkerPool:
    """Claims batches of due jobs and runs their handlers concurrently.

    Every job runs in its own session. Handler failures are recorded on the job
    and never escape ``run_once``.
    """

    def __init__(
        self,
        concurrency: int | None = None,
        batch_size: int | None = None,
        registry: dict[JobType, JobDefinition] | None = None,
        billing: BillingClient | None = None,
        notifier: Notifier | None = None,
        executor: RetryExecutor | None = None,
        session_factory: Callable[[], Session] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.batch_size = batch_size or settings.WORKER_BATCH_SIZE
        self.registry = registry
        self.billing = billing or BillingClient()
        self.notifier = notifier or Notifier()
        self.executor = executor or RetryExecutor()
        self.session_factory = session_factory or database.new_session
        self.clock = clock
        self.policy = RetryPolicy.single_attempt(settings.JOB_HANDLER_TIMEOUT_SECONDS)

    async def run_once(self) -> int:
        """Claim one batch and run it. Returns the number of jobs claimed."""
        db = self.session_factory()
        try:
            jobs = JobQueue(db).claim_batch(self.batch_size, self.clock())
            job_ids: list[UUID] = [job.id for job in jobs]  # type: ignore[misc]
        finally:
            db.close()
        if not job_ids:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(job_id: UUID) -> None:
            async with semaphore:
                await self._run_job(job_id)

        await asyncio.gather(*(run(job_id) for job_id in job_ids))
        return len(job_ids)

    async def run_until_idle(self, max_batches: int = 100) -> int:
        """Drain due jobs until a claim comes back empty."""
        total = 0
        for _ in range(max_batches):
            claimed = await self.run_once()
            if claimed == 0:
                break
            total += claimed
        return total

    async def run_forever(self, stop_event: asyncio.Event, poll_interval: float = 1.0) -> None:
        while not stop_event.is_set():
            if await self.run_once() == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except TimeoutError:
                    continue

    async def _run_job(self, job_id: UUID) -> None:
        db = self.session_factory()
        try:
            await self._execute(db, job_id)
        except Exception:
            db.rollback()
            logger.exception("Worker failed to settle job %s", job_id)
        finally:
            db.close()

    async def _execute(self, db: Session, job_id: UUID) -> None:
        queue = JobQueue(db)
        job = queue.repo.get_by_id(job_id)
        if job is None or job.status != JobStatus.PROCESSING.value:
            return

        try:
            definition = get_definition(str(job.job_type), self.registry)
            payload = definition.payload_model.model_validate(job.payload or {})
        except (PermanentError, ValidationError) as exc:
            queue.fail(job, describe_error(exc), retryable=False, now=self.clock())
            return

        ctx = HandlerContext(
            db=db, job=job, billing=self.billing, notifier=self.notifier, now=self.clock()
        )
        result = await self.executor.execute(lambda: definition.handler(ctx, payload), self.policy)
        if result.success:
            queue.complete(job, now=self.clock())
            return

        db.rollback()
        error = describe_error(result.error)
        status = queue.fail(
            job,
            error,
            retryable=not is_permanent(result.error),  # type: ignore[arg-type]
            now=self.clock(),
        )
        if status == JobStatus.DEAD_LETTER and definition.on_dead_letter is not None:
            definition.on_dead_letter(ctx, payload, error)
