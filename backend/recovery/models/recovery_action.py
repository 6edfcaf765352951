"""RecoveryAction model: one scheduled or executed step against a case."""

from enum import Enum

from sqlalchemy import JSON, Column, ForeignKey, Index, Integer, String, UniqueConstraint

from recovery.core.database import Base
from recovery.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class ActionType(str, Enum):
    NUDGE = "nudge"
    INCENTIVE_GRANT = "incentive_grant"
    REMINDER = "reminder"
    CANCEL_MEMBERSHIP = "cancel_membership"
    TERMINATE_CASE = "terminate_case"


class ActionChannel(str, Enum):
    PUSH = "push"
    DM = "dm"
    NONE = "none"


class ActionOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# Actions that must not run once their case has left the open state
CASE_BOUND_ACTIONS = frozenset(
    {ActionType.NUDGE.value, ActionType.REMINDER.value, ActionType.INCENTIVE_GRANT.value}
)


class RecoveryAction(Base):
    """RecoveryAction model.

    ``timeline_step`` is set for nudges and reminders only; the unique
    ``(case_id, timeline_step)`` constraint lets each step be scheduled once.
    """

    __tablename__ = "recovery_actions"
    __table_args__ = (
        UniqueConstraint("case_id", "timeline_step", name="uq_recovery_actions_case_step"),
        Index("ix_recovery_actions_case_id_scheduled_at", "case_id", "scheduled_at"),
        Index("ix_recovery_actions_outcome", "outcome"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    case_id = Column(
        UUIDType,
        ForeignKey("recovery_cases.id", ondelete="RESTRICT"),
        nullable=False,
    )
    action_type = Column(String(30), nullable=False)
    channel = Column(String(10), nullable=False, default=ActionChannel.NONE.value)
    timeline_step = Column(Integer, nullable=True)
    scheduled_at = Column(UTCDateTime, nullable=False, default=utc_now)
    executed_at = Column(UTCDateTime, nullable=True)
    outcome = Column(String(20), nullable=False, default=ActionOutcome.PENDING.value)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
