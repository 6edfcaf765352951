"""Periodic scan that schedules due timeline steps and expires exhausted cases."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from recovery.core.config import settings
from recovery.models.recovery_case import RecoveryCase
from recovery.models.shared import ensure_utc, utc_now
from recovery.repositories.recovery_action_repository import RecoveryActionRepository
from recovery.repositories.recovery_case_repository import RecoveryCaseRepository
from recovery.services.action_planner import ActionPlanner, step_due_at
from recovery.services.case_engine import CaseEngine
from recovery.services.company_config import CompanyRecoveryConfig, resolve_company_config

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    cases_scanned: int = 0
    actions_planned: int = 0
    cases_expired: int = 0
    errors: int = 0


class RecoveryScheduler:
    """Derives due work from open cases and the clock.

    At most one new timeline step is planned per case per scan, and only after
    every earlier step exists, so steps of one case are created in order.
    """

    def __init__(self, db: Session):
        self.db = db
        self.case_repo = RecoveryCaseRepository(db)
        self.action_repo = RecoveryActionRepository(db)
        self.planner = ActionPlanner(db)
        self.engine = CaseEngine(db)

    def run_scan(self, now: datetime | None = None) -> ScanResult:
        now = ensure_utc(now) if now else utc_now()
        result = ScanResult()
        configs: dict[str, CompanyRecoveryConfig] = {}

        after: tuple[datetime, UUID] | None = None
        while True:
            page = self.case_repo.get_open_page(after=after, limit=settings.SCHEDULER_PAGE_SIZE)
            if not page:
                break
            # Key taken before processing; a rollback below expires the page
            after = (page[-1].first_failure_at, page[-1].id)  # type: ignore[assignment]
            for case in page:
                self._scan_one(case, configs, now, result)
            if len(page) < settings.SCHEDULER_PAGE_SIZE:
                break

        if result.actions_planned or result.cases_expired or result.errors:
            logger.info(
                "Scheduler scanned %d case(s): %d action(s) planned, %d expired, %d error(s)",
                result.cases_scanned,
                result.actions_planned,
                result.cases_expired,
                result.errors,
            )
        return result

    def _scan_one(
        self,
        case: RecoveryCase,
        configs: dict[str, CompanyRecoveryConfig],
        now: datetime,
        result: ScanResult,
    ) -> None:
        case_id = case.id
        result.cases_scanned += 1
        try:
            company_id = str(case.company_id)
            if company_id not in configs:
                configs[company_id] = resolve_company_config(self.db, company_id)
            self._scan_case(case, configs[company_id], now, result)
        except Exception:
            self.db.rollback()
            result.errors += 1
            logger.exception("Scheduler failed on case %s", case_id)

    def next_step(self, case: RecoveryCase, offsets: list[int]) -> int | None:
        """Smallest timeline step without an action, or None when all exist."""
        scheduled = self.action_repo.get_timeline_steps(case.id)  # type: ignore[arg-type]
        for step in range(len(offsets)):
            if step not in scheduled:
                return step
        return None

    def _scan_case(
        self,
        case: RecoveryCase,
        config: CompanyRecoveryConfig,
        now: datetime,
        result: ScanResult,
    ) -> None:
        offsets = config.reminder_offsets_days
        step = self.next_step(case, offsets)

        if step is None:
            expires_at = step_due_at(case, offsets, len(offsets) - 1) + timedelta(
                hours=settings.EXPIRY_GRACE_HOURS
            )
            if now >= expires_at and self.engine.expire_case(case, now):
                result.cases_expired += 1
            return

        if now >= step_due_at(case, offsets, step):
            if self.planner.plan_timeline_step(case, config, step, now) is not None:
                result.actions_planned += 1
