"""RecoveryCase repository.

State changes are conditional updates (``WHERE status = 'open'`` and similar) so
that retried or concurrent callers can never apply a transition twice.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recovery.core.errors import ConflictError
from recovery.models.recovery_case import CaseStatus, RecoveryCase
from recovery.models.shared import utc_now


class RecoveryCaseRepository:
    """Repository for RecoveryCase model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, case_id: UUID) -> RecoveryCase | None:
        return self.db.query(RecoveryCase).filter(RecoveryCase.id == case_id).first()

    def get_open_for_membership(self, membership_id: str) -> RecoveryCase | None:
        return (
            self.db.query(RecoveryCase)
            .filter(
                RecoveryCase.membership_id == membership_id,
                RecoveryCase.status == CaseStatus.OPEN.value,
            )
            .first()
        )

    def get_open_page(
        self, after: tuple[datetime, UUID] | None = None, limit: int = 500
    ) -> list[RecoveryCase]:
        """Open cases ordered by ``(first_failure_at, id)``, starting after the ``after`` key."""
        query = self.db.query(RecoveryCase).filter(RecoveryCase.status == CaseStatus.OPEN.value)
        if after is not None:
            first_failure_at, case_id = after
            query = query.filter(
                or_(
                    RecoveryCase.first_failure_at > first_failure_at,
                    and_(
                        RecoveryCase.first_failure_at == first_failure_at,
                        RecoveryCase.id > case_id,
                    ),
                )
            )
        return (
            query.order_by(RecoveryCase.first_failure_at.asc(), RecoveryCase.id.asc())
            .limit(limit)
            .all()
        )

    def create_open(
        self,
        company_id: str,
        membership_id: str,
        first_failure_at: datetime,
        user_id: str | None = None,
        failure_reason: str | None = None,
        event_id: str | None = None,
    ) -> RecoveryCase:
        """Insert an open case.

        Raises:
            ConflictError: another open case for the membership already exists.
        """
        now = utc_now()
        case = RecoveryCase(
            company_id=company_id,
            membership_id=membership_id,
            user_id=user_id,
            status=CaseStatus.OPEN.value,
            first_failure_at=first_failure_at,
            last_action_at=now,
            attempts=1,
            incentive_days_granted=0,
            failure_reason=failure_reason,
            last_event_id=event_id,
        )
        self.db.add(case)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError(f"Open case already exists for membership {membership_id}") from exc
        self.db.refresh(case)
        return case

    def record_failure_attempt(self, case_id: UUID, event_id: str, now: datetime) -> bool:
        """Count one more payment failure on an open case.

        Applying the same event twice is a no-op.
        """
        updated = (
            self.db.query(RecoveryCase)
            .filter(
                RecoveryCase.id == case_id,
                RecoveryCase.status == CaseStatus.OPEN.value,
                or_(RecoveryCase.last_event_id.is_(None), RecoveryCase.last_event_id != event_id),
            )
            .update(
                {
                    RecoveryCase.attempts: RecoveryCase.attempts + 1,
                    RecoveryCase.last_action_at: now,
                    RecoveryCase.last_event_id: event_id,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return bool(updated)

    def transition(
        self,
        case_id: UUID,
        status: CaseStatus,
        now: datetime,
        recovered_amount_cents: int | None = None,
        closed_reason: str | None = None,
    ) -> bool:
        """Move an open case to a terminal status. False if it was not open."""
        values: dict = {
            RecoveryCase.status: status.value,
            RecoveryCase.last_action_at: now,
            RecoveryCase.closed_reason: closed_reason,
        }
        if recovered_amount_cents is not None:
            values[RecoveryCase.recovered_amount_cents] = recovered_amount_cents
        updated = (
            self.db.query(RecoveryCase)
            .filter(RecoveryCase.id == case_id, RecoveryCase.status == CaseStatus.OPEN.value)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return bool(updated)

    def claim_incentive(self, case_id: UUID, days: int) -> bool:
        """Reserve the case's single incentive grant."""
        updated = (
            self.db.query(RecoveryCase)
            .filter(
                RecoveryCase.id == case_id,
                RecoveryCase.status == CaseStatus.OPEN.value,
                RecoveryCase.incentive_days_granted == 0,
            )
            .update({RecoveryCase.incentive_days_granted: days}, synchronize_session=False)
        )
        self.db.commit()
        return bool(updated)

    def release_incentive(self, case_id: UUID, days: int) -> bool:
        """Undo ``claim_incentive`` after the billing call failed."""
        updated = (
            self.db.query(RecoveryCase)
            .filter(RecoveryCase.id == case_id, RecoveryCase.incentive_days_granted == days)
            .update({RecoveryCase.incentive_days_granted: 0}, synchronize_session=False)
        )
        self.db.commit()
        return bool(updated)

    def touch_last_action(self, case_id: UUID, now: datetime) -> None:
        self.db.query(RecoveryCase).filter(RecoveryCase.id == case_id).update(
            {RecoveryCase.last_action_at: now}, synchronize_session=False
        )
        self.db.commit()
