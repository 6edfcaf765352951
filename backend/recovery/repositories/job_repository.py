"""Job queue repository.

``claim_batch`` is the correctness core of the queue: candidates are selected in
priority order and then claimed one by one with a compare-and-set update, so two
pollers can never both move the same job to ``processing``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from recovery.models.job import Job, JobStatus


class JobRepository:
    """Repository for Job model."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        job_type: str,
        payload: dict[str, Any],
        priority: int,
        scheduled_at: datetime,
        max_attempts: int,
        case_id: UUID | None = None,
        replayed_from_id: UUID | None = None,
    ) -> Job:
        job = self.build(
            job_type=job_type,
            payload=payload,
            priority=priority,
            scheduled_at=scheduled_at,
            max_attempts=max_attempts,
            case_id=case_id,
            replayed_from_id=replayed_from_id,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def build(
        self,
        job_type: str,
        payload: dict[str, Any],
        priority: int,
        scheduled_at: datetime,
        max_attempts: int,
        case_id: UUID | None = None,
        replayed_from_id: UUID | None = None,
    ) -> Job:
        """Unsaved job row, for callers that insert it together with other rows."""
        return Job(
            job_type=job_type,
            payload=payload,
            priority=priority,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts,
            case_id=case_id,
            scheduled_at=scheduled_at,
            replayed_from_id=replayed_from_id,
        )

    def get_by_id(self, job_id: UUID) -> Job | None:
        return self.db.query(Job).filter(Job.id == job_id).first()

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        status: str | None = None,
        job_type: str | None = None,
    ) -> list[Job]:
        query = self.db.query(Job)
        if status:
            query = query.filter(Job.status == status)
        if job_type:
            query = query.filter(Job.job_type == job_type)
        return query.order_by(Job.created_at.desc()).offset(skip).limit(limit).all()

    def get_for_case(self, case_id: UUID) -> list[Job]:
        return (
            self.db.query(Job)
            .filter(Job.case_id == case_id)
            .order_by(Job.scheduled_at.asc())
            .all()
        )

    def claim_batch(self, limit: int, now: datetime) -> list[Job]:
        """Atomically move up to ``limit`` due pending jobs to ``processing``."""
        candidate_ids = [
            row[0]
            for row in (
                self.db.query(Job.id)
                .filter(
                    Job.status == JobStatus.PENDING.value,
                    Job.scheduled_at <= now,
                    Job.attempts < Job.max_attempts,
                )
                .order_by(Job.priority.asc(), Job.scheduled_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
                .all()
            )
        ]

        claimed_ids: list[UUID] = []
        for job_id in candidate_ids:
            updated = (
                self.db.query(Job)
                .filter(Job.id == job_id, Job.status == JobStatus.PENDING.value)
                .update(
                    {
                        Job.status: JobStatus.PROCESSING.value,
                        Job.attempts: Job.attempts + 1,
                        Job.started_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if updated:
                claimed_ids.append(job_id)
        self.db.commit()

        if not claimed_ids:
            return []
        jobs = self.db.query(Job).filter(Job.id.in_(claimed_ids)).all()
        order = {job_id: index for index, job_id in enumerate(claimed_ids)}
        return sorted(jobs, key=lambda job: order[job.id])

    def mark_completed(self, job_id: UUID, now: datetime) -> bool:
        updated = (
            self.db.query(Job)
            .filter(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
            .update(
                {Job.status: JobStatus.COMPLETED.value, Job.completed_at: now},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return bool(updated)

    def reschedule(self, job_id: UUID, run_at: datetime, error: str) -> bool:
        """Return a failed job to ``pending`` to run again at ``run_at``."""
        updated = (
            self.db.query(Job)
            .filter(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
            .update(
                {
                    Job.status: JobStatus.PENDING.value,
                    Job.scheduled_at: run_at,
                    Job.last_error: error[:2000],
                    Job.started_at: None,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return bool(updated)

    def mark_dead_letter(self, job_id: UUID, error: str, now: datetime) -> bool:
        updated = (
            self.db.query(Job)
            .filter(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
            .update(
                {
                    Job.status: JobStatus.DEAD_LETTER.value,
                    Job.last_error: error[:2000],
                    Job.completed_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return bool(updated)

    def cancel_pending_for_case(self, case_id: UUID, now: datetime, reason: str) -> int:
        updated = (
            self.db.query(Job)
            .filter(Job.case_id == case_id, Job.status == JobStatus.PENDING.value)
            .update(
                {
                    Job.status: JobStatus.CANCELLED.value,
                    Job.completed_at: now,
                    Job.last_error: reason,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return int(updated)

    def get_stale_processing(self, started_before: datetime) -> list[Job]:
        return (
            self.db.query(Job)
            .filter(
                Job.status == JobStatus.PROCESSING.value,
                Job.started_at < started_before,
            )
            .all()
        )

    def count_by_status(self) -> dict[str, int]:
        rows = self.db.query(Job.status, func.count(Job.id)).group_by(Job.status).all()
        counts = {status.value: 0 for status in JobStatus}
        for status, total in rows:
            counts[str(status)] = int(total)
        return counts
