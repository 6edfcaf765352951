"""RecoveryCase and RecoveryAction schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class RecoveryActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    case_id: UUID
    action_type: str
    channel: str
    timeline_step: int | None = None
    scheduled_at: datetime
    executed_at: datetime | None = None
    outcome: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="details")


class RecoveryCaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: str
    membership_id: str
    user_id: str | None = None
    status: str
    first_failure_at: datetime
    last_action_at: datetime | None = None
    attempts: int
    incentive_days_granted: int
    recovered_amount_cents: int | None = None
    failure_reason: str | None = None
    closed_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class RecoveryCaseDetailResponse(RecoveryCaseResponse):
    actions: list[RecoveryActionResponse] = Field(default_factory=list)


class CaseTerminateRequest(BaseModel):
    cancel_membership: bool = False
    reason: str = Field(default="manual_termination", max_length=255)
