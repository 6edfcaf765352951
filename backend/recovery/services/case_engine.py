"""Recovery-case state machine.

A case is ``open`` from the first payment failure of a membership until a
payment success or reactivation (``recovered``), a deactivation, manual
termination or exhausted timeline (``closed_no_recovery``). Every transition is
a conditional update on ``status = 'open'``; a transition that loses a race is a
no-op for the loser.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from recovery.core.config import settings
from recovery.core.errors import ConflictError, InvalidStateError, NotFoundError
from recovery.models.event import Event, EventType
from recovery.models.recovery_action import ActionType
from recovery.models.recovery_case import CaseStatus, RecoveryCase
from recovery.models.shared import ensure_utc, utc_now
from recovery.repositories.recovery_action_repository import RecoveryActionRepository
from recovery.repositories.recovery_case_repository import RecoveryCaseRepository
from recovery.services.action_planner import ActionPlanner
from recovery.services.billing_client import BillingClient
from recovery.services.company_config import CompanyRecoveryConfig, resolve_company_config
from recovery.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

REASON_PAYMENT_SUCCEEDED = "payment_succeeded"
REASON_MEMBERSHIP_ACTIVATED = "membership_activated"
REASON_MEMBERSHIP_DEACTIVATED = "membership_deactivated"
REASON_TIMELINE_EXHAUSTED = "timeline_exhausted"


class CaseEngine:
    """Service applying provider events and operator decisions to recovery cases."""

    def __init__(self, db: Session):
        self.db = db
        self.case_repo = RecoveryCaseRepository(db)
        self.action_repo = RecoveryActionRepository(db)
        self.planner = ActionPlanner(db)
        self.queue = JobQueue(db)

    def handle_event(self, event: Event, now: datetime | None = None) -> RecoveryCase | None:
        """Apply a stored provider event. Returns the affected case, if any."""
        now = now or utc_now()
        if not event.membership_id:
            logger.info("Event %s has no membership, nothing to do", event.provider_event_id)
            return None

        event_type = EventType(event.event_type)
        if event_type == EventType.PAYMENT_FAILED:
            return self.open_or_attach(event, now)
        if event_type == EventType.PAYMENT_SUCCEEDED:
            return self._recover_from_payment(event, now)
        if event_type == EventType.MEMBERSHIP_ACTIVATED:
            return self._close_open_case(
                event, CaseStatus.RECOVERED, REASON_MEMBERSHIP_ACTIVATED, now
            )
        if event_type == EventType.MEMBERSHIP_DEACTIVATED:
            return self._close_open_case(
                event, CaseStatus.CLOSED_NO_RECOVERY, REASON_MEMBERSHIP_DEACTIVATED, now
            )

        logger.debug("Ignoring event %s of unhandled type", event.provider_event_id)
        return None

    def open_or_attach(self, event: Event, now: datetime | None = None) -> RecoveryCase:
        """Open a case for the event's membership, or count the failure on the open one.

        A repeated failure never resets the reminder timeline.
        """
        now = now or utc_now()
        payload = event.payload or {}
        config = resolve_company_config(self.db, str(event.company_id))
        membership_id = str(event.membership_id)
        provider_event_id = str(event.provider_event_id)

        case = self.case_repo.get_open_for_membership(membership_id)
        if case is None:
            try:
                case = self.case_repo.create_open(
                    company_id=str(event.company_id),
                    membership_id=membership_id,
                    first_failure_at=ensure_utc(event.occurred_at),  # type: ignore[arg-type]
                    user_id=payload.get("user_id"),
                    failure_reason=payload.get("failure_reason"),
                    event_id=provider_event_id,
                )
            except ConflictError:
                case = self.case_repo.get_open_for_membership(membership_id)
                if case is None:
                    # The winner's case closed before we could attach; let the job retry.
                    raise
                logger.info(
                    "Lost case creation race for membership %s, attaching to case %s",
                    membership_id,
                    case.id,
                )
            else:
                logger.info("Opened recovery case %s for membership %s", case.id, membership_id)
                self._plan_opening_actions(case, config, now)
                return case

        if case.last_event_id == provider_event_id:
            # Re-application of the event that opened the case
            self._plan_opening_actions(case, config, now)
            return case

        if self.case_repo.record_failure_attempt(case.id, provider_event_id, now):  # type: ignore[arg-type]
            logger.info(
                "Recorded repeated payment failure on case %s (event %s)",
                case.id,
                provider_event_id,
            )
        self.db.refresh(case)
        return case

    def _plan_opening_actions(
        self, case: RecoveryCase, config: CompanyRecoveryConfig, now: datetime
    ) -> None:
        """T+0 nudge and the incentive grant. Safe to call more than once."""
        if 0 not in self.action_repo.get_timeline_steps(case.id):  # type: ignore[arg-type]
            self.planner.plan_timeline_step(case, config, 0, now)
        if config.incentive_days > 0 and not self.action_repo.get_by_type(
            case.id, ActionType.INCENTIVE_GRANT  # type: ignore[arg-type]
        ):
            self.planner.plan_incentive(case, config.incentive_days, now)

    def _recover_from_payment(self, event: Event, now: datetime) -> RecoveryCase | None:
        case = self.case_repo.get_open_for_membership(str(event.membership_id))
        if case is None:
            logger.debug("No open case for membership %s", event.membership_id)
            return None

        first_failure = ensure_utc(case.first_failure_at)  # type: ignore[arg-type]
        occurred = ensure_utc(event.occurred_at)  # type: ignore[arg-type]
        window_end = first_failure + timedelta(days=settings.ATTRIBUTION_WINDOW_DAYS)
        if not first_failure <= occurred <= window_end:
            logger.info(
                "Payment success %s for case %s outside the %d-day attribution window",
                event.provider_event_id,
                case.id,
                settings.ATTRIBUTION_WINDOW_DAYS,
            )
            return case

        amount = (event.payload or {}).get("amount_cents")
        self._transition(
            case,
            CaseStatus.RECOVERED,
            REASON_PAYMENT_SUCCEEDED,
            now,
            recovered_amount_cents=int(amount) if amount is not None else None,
        )
        return case

    def _close_open_case(
        self, event: Event, status: CaseStatus, reason: str, now: datetime
    ) -> RecoveryCase | None:
        case = self.case_repo.get_open_for_membership(str(event.membership_id))
        if case is None:
            logger.debug("No open case for membership %s", event.membership_id)
            return None
        self._transition(case, status, reason, now)
        return case

    def _transition(
        self,
        case: RecoveryCase,
        status: CaseStatus,
        reason: str,
        now: datetime,
        recovered_amount_cents: int | None = None,
    ) -> bool:
        """Close an open case and make its pending work non-executable."""
        case_id: UUID = case.id  # type: ignore[assignment]
        if not self.case_repo.transition(
            case_id,
            status,
            now,
            recovered_amount_cents=recovered_amount_cents,
            closed_reason=reason,
        ):
            logger.info("Case %s is no longer open, skipping %s", case_id, status.value)
            return False

        self.queue.cancel_for_case(case_id, reason)
        self.action_repo.skip_pending_for_case(case_id, reason)
        self.planner.record_terminate(case, reason, now)
        self.db.refresh(case)
        logger.info("Case %s -> %s (%s)", case_id, status.value, reason)
        return True

    def terminate_case(
        self,
        case_id: UUID,
        cancel_membership: bool = False,
        reason: str = "manual_termination",
        actor: str | None = None,
    ) -> RecoveryCase:
        """Operator-initiated close through the same transition path.

        Raises:
            NotFoundError: no such case.
            InvalidStateError: the case is not open.
        """
        case = self.case_repo.get_by_id(case_id)
        if case is None:
            raise NotFoundError(f"Recovery case {case_id} not found")
        if case.status != CaseStatus.OPEN.value:
            raise InvalidStateError(f"Recovery case {case_id} is {case.status}, not open")

        now = utc_now()
        if not self._transition(case, CaseStatus.CLOSED_NO_RECOVERY, reason, now):
            raise InvalidStateError(f"Recovery case {case_id} was closed concurrently")
        if actor:
            logger.info("Case %s terminated by %s", case_id, actor)
        if cancel_membership:
            self.planner.plan_cancel_membership(case, reason, now)
        return case

    def expire_case(self, case: RecoveryCase, now: datetime | None = None) -> bool:
        """Close a case whose reminder timeline is exhausted."""
        now = now or utc_now()
        if not self._transition(case, CaseStatus.CLOSED_NO_RECOVERY, REASON_TIMELINE_EXHAUSTED, now):
            return False
        if settings.CANCEL_MEMBERSHIP_ON_EXPIRY:
            self.planner.plan_cancel_membership(case, REASON_TIMELINE_EXHAUSTED, now)
        return True

    async def grant_incentive(self, case: RecoveryCase, days: int, billing: BillingClient) -> bool:
        """Grant free days at most once per case.

        The grant is claimed in the store before calling the billing API and
        released if that call fails, so a retried job may try again.
        Returns False when the incentive was already granted or the case closed.
        """
        if days <= 0:
            return False
        case_id: UUID = case.id  # type: ignore[assignment]
        if not self.case_repo.claim_incentive(case_id, days):
            logger.info("Incentive for case %s already granted or case closed", case_id)
            return False
        try:
            await billing.add_free_days(str(case.membership_id), days)
        except BaseException:
            self.case_repo.release_incentive(case_id, days)
            raise
        logger.info("Granted %d free day(s) on case %s", days, case_id)
        return True
