"""Job payload and response schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ProcessEventPayload(BaseModel):
    event_id: UUID


class ExecuteActionPayload(BaseModel):
    action_id: UUID


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    payload: dict[str, Any]
    priority: int
    status: str
    attempts: int
    max_attempts: int
    case_id: UUID | None = None
    scheduled_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    replayed_from_id: UUID | None = None
    created_at: datetime


class JobReplayResponse(BaseModel):
    replayed_job_id: UUID
    job_id: UUID


class QueueStatsResponse(BaseModel):
    counts: dict[str, int]
    circuits: dict[str, str]
