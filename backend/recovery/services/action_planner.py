"""Records recovery actions together with the jobs that execute them."""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from recovery.core.errors import ConflictError
from recovery.models.job import PRIORITY_ACTION, JobType
from recovery.models.recovery_action import ActionChannel, ActionOutcome, ActionType, RecoveryAction
from recovery.models.recovery_case import RecoveryCase
from recovery.models.shared import ensure_utc, generate_uuid, utc_now
from recovery.repositories.recovery_action_repository import RecoveryActionRepository
from recovery.schemas.job import ExecuteActionPayload
from recovery.services.company_config import CompanyRecoveryConfig
from recovery.services.job_queue import JobQueue

logger = logging.getLogger(__name__)


def step_due_at(case: RecoveryCase, offsets: list[int], step: int) -> datetime:
    """When timeline step ``step`` of ``case`` becomes due."""
    return ensure_utc(case.first_failure_at) + timedelta(days=offsets[step])  # type: ignore[arg-type]


class ActionPlanner:
    """Creates RecoveryAction rows and their ``execute_action`` jobs atomically."""

    def __init__(self, db: Session):
        self.db = db
        self.action_repo = RecoveryActionRepository(db)
        self.queue = JobQueue(db)

    def _plan(
        self,
        case: RecoveryCase,
        action_type: ActionType,
        scheduled_at: datetime,
        channel: ActionChannel = ActionChannel.NONE,
        timeline_step: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> RecoveryAction:
        action_id = generate_uuid()
        job = self.queue.build(
            JobType.EXECUTE_ACTION,
            ExecuteActionPayload(action_id=action_id),
            priority=PRIORITY_ACTION,
            scheduled_at=scheduled_at,
            case_id=case.id,  # type: ignore[arg-type]
        )
        action = self.action_repo.create(
            case_id=case.id,  # type: ignore[arg-type]
            action_type=action_type,
            scheduled_at=scheduled_at,
            channel=channel,
            timeline_step=timeline_step,
            details=details,
            action_id=action_id,
            job=job,
        )
        logger.info(
            "Planned %s action %s for case %s at %s",
            action_type.value,
            action.id,
            case.id,
            scheduled_at.isoformat(),
        )
        return action

    def plan_timeline_step(
        self,
        case: RecoveryCase,
        config: CompanyRecoveryConfig,
        step: int,
        now: datetime | None = None,
    ) -> RecoveryAction | None:
        """Schedule nudge (step 0) or reminder (later steps) for ``case``.

        Returns None when the step was already scheduled, possibly by a
        concurrent scheduler.
        """
        now = now or utc_now()
        offsets = config.reminder_offsets_days
        channels = config.channels
        action_type = ActionType.NUDGE if step == 0 else ActionType.REMINDER
        details = {
            "offset_days": offsets[step],
            "channels": [channel.value for channel in channels],
        }
        scheduled_at = max(step_due_at(case, offsets, step), ensure_utc(now))
        try:
            return self._plan(
                case,
                action_type,
                scheduled_at,
                channel=channels[0] if channels else ActionChannel.NONE,
                timeline_step=step,
                details=details,
            )
        except ConflictError:
            logger.info("Timeline step %d for case %s already scheduled", step, case.id)
            return None

    def plan_incentive(self, case: RecoveryCase, days: int, now: datetime | None = None) -> RecoveryAction:
        return self._plan(
            case,
            ActionType.INCENTIVE_GRANT,
            now or utc_now(),
            details={"days": days},
        )

    def plan_cancel_membership(
        self, case: RecoveryCase, reason: str, now: datetime | None = None
    ) -> RecoveryAction:
        return self._plan(
            case,
            ActionType.CANCEL_MEMBERSHIP,
            now or utc_now(),
            details={"reason": reason},
        )

    def record_terminate(
        self, case: RecoveryCase, reason: str, now: datetime | None = None
    ) -> RecoveryAction:
        """Audit entry for a terminal transition. Executes nothing."""
        now = now or utc_now()
        return self.action_repo.create(
            case_id=case.id,  # type: ignore[arg-type]
            action_type=ActionType.TERMINATE_CASE,
            scheduled_at=now,
            details={"reason": reason},
            outcome=ActionOutcome.SUCCESS,
            executed_at=now,
        )
