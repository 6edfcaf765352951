from recovery.models.event import Event, EventType
from recovery.models.job import Job, JobStatus, JobType
from recovery.models.recovery_action import (
    ActionChannel,
    ActionOutcome,
    ActionType,
    RecoveryAction,
)
from recovery.models.recovery_case import CaseStatus, RecoveryCase
from recovery.models.recovery_settings import RecoverySettings

__all__ = [
    "ActionChannel",
    "ActionOutcome",
    "ActionType",
    "CaseStatus",
    "Event",
    "EventType",
    "Job",
    "JobStatus",
    "JobType",
    "RecoveryAction",
    "RecoveryCase",
    "RecoverySettings",
]
