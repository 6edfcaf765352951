"""Durable priority job queue backed by the ``job_queue`` table."""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.orm import Session

from recovery.core.config import settings
from recovery.core.errors import InvalidStateError, NotFoundError
from recovery.core.retry import compute_backoff_delay
from recovery.models.job import PRIORITY_ACTION, Job, JobStatus, JobType
from recovery.models.shared import ensure_utc, utc_now
from recovery.repositories.job_repository import JobRepository
from recovery.schemas.job import ExecuteActionPayload, ProcessEventPayload

logger = logging.getLogger(__name__)

PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.PROCESS_EVENT: ProcessEventPayload,
    JobType.EXECUTE_ACTION: ExecuteActionPayload,
}


def retry_delay(attempts: int) -> float:
    """Backoff before re-running a job that has failed ``attempts`` times."""
    return compute_backoff_delay(
        max(attempts - 1, 0),
        base=settings.JOB_BACKOFF_BASE_SECONDS,
        multiplier=settings.JOB_BACKOFF_MULTIPLIER,
        cap=settings.JOB_BACKOFF_MAX_SECONDS,
    )


class JobQueue:
    """Service for enqueueing, claiming and settling jobs."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = JobRepository(db)

    def enqueue(
        self,
        job_type: JobType,
        payload: BaseModel | dict[str, Any],
        priority: int = PRIORITY_ACTION,
        scheduled_at: datetime | None = None,
        max_attempts: int | None = None,
        case_id: UUID | None = None,
    ) -> UUID:
        """Persist a pending job and return its id."""
        job = self.build(job_type, payload, priority, scheduled_at, max_attempts, case_id)
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        logger.debug("Enqueued %s job %s", job_type.value, job.id)
        return job.id  # type: ignore[return-value]

    def build(
        self,
        job_type: JobType,
        payload: BaseModel | dict[str, Any],
        priority: int = PRIORITY_ACTION,
        scheduled_at: datetime | None = None,
        max_attempts: int | None = None,
        case_id: UUID | None = None,
    ) -> Job:
        """Unsaved pending job with its payload validated against the job type's model.

        Raises:
            pydantic.ValidationError: the payload does not fit the job type.
        """
        model = PAYLOAD_MODELS[job_type]
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        validated = model.model_validate(payload)
        return self.repo.build(
            job_type=job_type.value,
            payload=validated.model_dump(mode="json"),
            priority=priority,
            scheduled_at=scheduled_at or utc_now(),
            max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
            case_id=case_id,
        )

    def claim_batch(self, n: int, now: datetime | None = None) -> list[Job]:
        return self.repo.claim_batch(n, now or utc_now())

    def complete(self, job: Job, now: datetime | None = None) -> None:
        self.repo.mark_completed(job.id, now or utc_now())  # type: ignore[arg-type]

    def fail(
        self,
        job: Job,
        error: str,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> JobStatus:
        """Settle a failed attempt: reschedule with backoff or dead-letter.

        ``job.attempts`` already counts the attempt that just failed.
        """
        now = now or utc_now()
        attempts = int(job.attempts)
        max_attempts = int(job.max_attempts)
        if retryable and attempts < max_attempts:
            delay = retry_delay(attempts)
            self.repo.reschedule(job.id, now + timedelta(seconds=delay), error)  # type: ignore[arg-type]
            logger.warning(
                "Job %s (%s) failed attempt %d/%d, retrying in %.0fs: %s",
                job.id,
                job.job_type,
                attempts,
                max_attempts,
                delay,
                error,
            )
            return JobStatus.PENDING

        self.repo.mark_dead_letter(job.id, error, now)  # type: ignore[arg-type]
        logger.warning(
            "Job %s (%s) dead-lettered after %d attempt(s): %s",
            job.id,
            job.job_type,
            attempts,
            error,
        )
        return JobStatus.DEAD_LETTER

    def cancel_for_case(self, case_id: UUID, reason: str = "case_closed") -> int:
        cancelled = self.repo.cancel_pending_for_case(case_id, utc_now(), reason)
        if cancelled:
            logger.info("Cancelled %d pending job(s) for case %s", cancelled, case_id)
        return cancelled

    def replay(self, job_id: UUID) -> UUID:
        """Enqueue a fresh copy of a dead-lettered job.

        Raises:
            NotFoundError: no such job.
            InvalidStateError: the job is not dead-lettered.
        """
        job = self.repo.get_by_id(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.status != JobStatus.DEAD_LETTER.value:
            raise InvalidStateError(f"Only dead-letter jobs can be replayed (job is {job.status})")
        replayed = self.repo.create(
            job_type=str(job.job_type),
            payload=dict(job.payload or {}),
            priority=int(job.priority),
            scheduled_at=utc_now(),
            max_attempts=int(job.max_attempts),
            case_id=job.case_id,  # type: ignore[arg-type]
            replayed_from_id=job.id,  # type: ignore[arg-type]
        )
        logger.info("Replayed dead-letter job %s as %s", job_id, replayed.id)
        return replayed.id  # type: ignore[return-value]

    def requeue_stale(self, older_than: datetime | None = None) -> int:
        """Recover jobs stuck in ``processing`` after their worker vanished."""
        cutoff = older_than or utc_now() - timedelta(seconds=settings.JOB_VISIBILITY_TIMEOUT_SECONDS)
        count = 0
        for job in self.repo.get_stale_processing(ensure_utc(cutoff)):
            self.fail(job, "Worker did not finish within the visibility timeout")
            count += 1
        return count

    def list_dead_letter(self, skip: int = 0, limit: int = 100) -> list[Job]:
        return self.repo.get_all(skip=skip, limit=limit, status=JobStatus.DEAD_LETTER.value)

    def stats(self) -> dict[str, int]:
        return self.repo.count_by_status()
