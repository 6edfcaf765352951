"""RecoveryAction repository for data access."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recovery.core.errors import ConflictError
from recovery.models.job import Job
from recovery.models.recovery_action import ActionChannel, ActionOutcome, ActionType, RecoveryAction
from recovery.models.shared import generate_uuid

# Outcomes from which an action may still be executed
EXECUTABLE_OUTCOMES = (ActionOutcome.PENDING.value, ActionOutcome.FAILED.value)


class RecoveryActionRepository:
    """Repository for RecoveryAction model."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        case_id: UUID,
        action_type: ActionType,
        scheduled_at: datetime,
        channel: ActionChannel = ActionChannel.NONE,
        timeline_step: int | None = None,
        details: dict[str, Any] | None = None,
        outcome: ActionOutcome = ActionOutcome.PENDING,
        executed_at: datetime | None = None,
        action_id: UUID | None = None,
        job: Job | None = None,
    ) -> RecoveryAction:
        """Create an action, and the job that executes it when one is given.

        Both rows are committed together, so an action is never left without its job.

        Raises:
            ConflictError: the timeline step is already scheduled for this case.
        """
        action = RecoveryAction(
            id=action_id or generate_uuid(),
            case_id=case_id,
            action_type=action_type.value,
            channel=channel.value,
            timeline_step=timeline_step,
            scheduled_at=scheduled_at,
            executed_at=executed_at,
            outcome=outcome.value,
            details=details or {},
        )
        self.db.add(action)
        if job is not None:
            self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError(
                f"Timeline step {timeline_step} already scheduled for case {case_id}"
            ) from exc
        self.db.refresh(action)
        return action

    def get_by_id(self, action_id: UUID) -> RecoveryAction | None:
        return self.db.query(RecoveryAction).filter(RecoveryAction.id == action_id).first()

    def get_for_case(self, case_id: UUID) -> list[RecoveryAction]:
        return (
            self.db.query(RecoveryAction)
            .filter(RecoveryAction.case_id == case_id)
            .order_by(RecoveryAction.scheduled_at.asc(), RecoveryAction.created_at.asc())
            .all()
        )

    def get_by_type(self, case_id: UUID, action_type: ActionType) -> list[RecoveryAction]:
        return (
            self.db.query(RecoveryAction)
            .filter(
                RecoveryAction.case_id == case_id,
                RecoveryAction.action_type == action_type.value,
            )
            .order_by(RecoveryAction.scheduled_at.asc())
            .all()
        )

    def get_timeline_steps(self, case_id: UUID) -> set[int]:
        """Timeline steps already scheduled for a case."""
        rows = (
            self.db.query(RecoveryAction.timeline_step)
            .filter(
                RecoveryAction.case_id == case_id,
                RecoveryAction.timeline_step.isnot(None),
            )
            .all()
        )
        return {int(row[0]) for row in rows}

    def mark_outcome(
        self,
        action_id: UUID,
        outcome: ActionOutcome,
        now: datetime,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Record the result of executing an action.

        Only pending or failed actions change; success and skipped are final.
        """
        action = self.get_by_id(action_id)
        if action is None:
            return False
        values: dict = {RecoveryAction.outcome: outcome.value}
        if outcome != ActionOutcome.SKIPPED:
            values[RecoveryAction.executed_at] = now
        if details:
            values[RecoveryAction.details] = {**(action.details or {}), **details}
        updated = (
            self.db.query(RecoveryAction)
            .filter(
                RecoveryAction.id == action_id,
                RecoveryAction.outcome.in_(EXECUTABLE_OUTCOMES),
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return bool(updated)

    def skip_pending_for_case(self, case_id: UUID, reason: str) -> int:
        """Make every pending action of a case non-executable."""
        actions = (
            self.db.query(RecoveryAction)
            .filter(
                RecoveryAction.case_id == case_id,
                RecoveryAction.outcome == ActionOutcome.PENDING.value,
            )
            .all()
        )
        for action in actions:
            action.outcome = ActionOutcome.SKIPPED.value  # type: ignore[assignment]
            action.details = {**(action.details or {}), "skipped_reason": reason}  # type: ignore[assignment]
        self.db.commit()
        return len(actions)
