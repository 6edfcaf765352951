"""Job model: durable queue entry wrapping one unit of background work."""

from enum import Enum

from sqlalchemy import JSON, Column, Index, Integer, String, Text

from recovery.core.database import Base
from recovery.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class JobType(str, Enum):
    PROCESS_EVENT = "process_event"
    EXECUTE_ACTION = "execute_action"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"
    CANCELLED = "cancelled"


# Lower runs first
PRIORITY_EVENT = 10
PRIORITY_ACTION = 50
PRIORITY_MAINTENANCE = 100


class Job(Base):
    """Job model - claimed atomically by workers, retried with backoff."""

    __tablename__ = "job_queue"
    __table_args__ = (
        Index("ix_job_queue_claim", "status", "priority", "scheduled_at"),
        Index("ix_job_queue_case_id_status", "case_id", "status"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    job_type = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=PRIORITY_ACTION)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    case_id = Column(UUIDType, nullable=True)
    scheduled_at = Column(UTCDateTime, nullable=False, default=utc_now)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    replayed_from_id = Column(UUIDType, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
