from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from recovery.core.database import get_db
from recovery.core.errors import InvalidStateError, NotFoundError
from recovery.core.retry import breakers
from recovery.schemas.job import JobReplayResponse, JobResponse, QueueStatsResponse
from recovery.services.job_queue import JobQueue

router = APIRouter()


@router.get("/dead-letter", response_model=list[JobResponse])
async def list_dead_letter_jobs(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[JobResponse]:
    """List dead-lettered jobs, newest first."""
    jobs = JobQueue(db).list_dead_letter(skip=skip, limit=limit)
    return [JobResponse.model_validate(job) for job in jobs]


@router.post("/{job_id}/replay", response_model=JobReplayResponse)
async def replay_job(job_id: UUID, db: Session = Depends(get_db)) -> JobReplayResponse:
    """Enqueue a fresh copy of a dead-lettered job."""
    try:
        new_id = JobQueue(db).replay(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found") from None
    except InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return JobReplayResponse(replayed_job_id=job_id, job_id=new_id)


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(db: Session = Depends(get_db)) -> QueueStatsResponse:
    return QueueStatsResponse(counts=JobQueue(db).stats(), circuits=breakers.snapshot())
