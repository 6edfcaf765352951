"""Provider event schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from recovery.models.event import EventType


class ProviderEvent(BaseModel):
    """Typed view of a verified webhook body, reduced to what the engine consumes."""

    provider_event_id: str = Field(min_length=1, max_length=255)
    provider_type: str = Field(min_length=1, max_length=100)
    event_type: EventType
    company_id: str = Field(min_length=1, max_length=255)
    membership_id: str | None = Field(default=None, max_length=255)
    user_id: str | None = Field(default=None, max_length=255)
    amount_cents: int | None = None
    currency: str | None = Field(default=None, max_length=10)
    failure_reason: str | None = Field(default=None, max_length=255)
    occurred_at: datetime

    def minimal_payload(self) -> dict[str, Any]:
        """Redacted payload persisted on the event row."""
        return {
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "failure_reason": self.failure_reason,
        }


class IngestResult(BaseModel):
    event_id: UUID | None = None
    provider_event_id: str
    duplicate: bool = False
    job_id: UUID | None = None


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_event_id: str
    event_type: str
    provider_type: str
    company_id: str
    membership_id: str | None = None
    payload: dict[str, Any]
    occurred_at: datetime
    received_at: datetime
    processed_at: datetime | None = None
    processing_error: str | None = None
