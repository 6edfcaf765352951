"""Tests for the periodic recovery scheduler."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from recovery.core.config import settings
from recovery.models.job import JobStatus, JobType
from recovery.models.recovery_action import ActionType
from recovery.models.recovery_case import CaseStatus
from recovery.models.recovery_settings import RecoverySettings
from recovery.repositories.job_repository import JobRepository
from recovery.repositories.recovery_action_repository import RecoveryActionRepository
from recovery.services import company_config
from recovery.services.case_engine import CaseEngine
from recovery.services.scheduler import RecoveryScheduler


@pytest.fixture
def scheduler(db_session):
    return RecoveryScheduler(db_session)


@pytest.fixture
def open_case(db_session, make_event, t0):
    def _open(event_id: str = "evt_1", membership_id: str = "mem_1", company_id: str = "biz_1"):
        event = make_event(event_id, membership_id=membership_id, company_id=company_id)
        return CaseEngine(db_session).handle_event(event, t0)

    return _open


def _steps(db, case):
    db.expire_all()
    return sorted(RecoveryActionRepository(db).get_timeline_steps(case.id))


class TestRunScan:
    def test_nothing_due(self, db_session, scheduler, open_case, t0):
        """Test no reminder is planned before its offset."""
        case = open_case()

        result = scheduler.run_scan(now=t0 + timedelta(days=1))

        assert result.cases_scanned == 1
        assert result.actions_planned == 0
        assert _steps(db_session, case) == [0]

    def test_plans_due_reminder(self, db_session, scheduler, open_case, t0):
        """Test a reminder is planned with its job once its offset is reached."""
        case = open_case()
        now = t0 + timedelta(days=2)

        result = scheduler.run_scan(now=now)

        assert result.actions_planned == 1
        [reminder] = RecoveryActionRepository(db_session).get_by_type(case.id, ActionType.REMINDER)
        assert reminder.timeline_step == 1
        assert reminder.scheduled_at == now
        assert reminder.details["offset_days"] == 2
        jobs = [
            job
            for job in JobRepository(db_session).get_for_case(case.id)
            if job.payload["action_id"] == str(reminder.id)
        ]
        assert len(jobs) == 1
        assert jobs[0].job_type == JobType.EXECUTE_ACTION.value
        assert jobs[0].status == JobStatus.PENDING.value

    def test_rescan_plans_nothing_new(self, db_session, scheduler, open_case, t0):
        """Test repeated scans never duplicate a timeline step."""
        case = open_case()
        now = t0 + timedelta(days=2, hours=1)

        scheduler.run_scan(now=now)
        result = scheduler.run_scan(now=now)

        assert result.actions_planned == 0
        assert _steps(db_session, case) == [0, 1]

    def test_late_scan_catches_up_in_order(self, db_session, scheduler, open_case, t0):
        """Test a scheduler that fell behind plans one missed step per scan, oldest first."""
        case = open_case()
        now = t0 + timedelta(days=4, hours=1)

        scheduler.run_scan(now=now)
        assert _steps(db_session, case) == [0, 1]
        scheduler.run_scan(now=now)
        assert _steps(db_session, case) == [0, 1, 2]

    def test_expires_after_grace(self, db_session, scheduler, open_case, t0):
        """Test a case with an exhausted timeline closes after the grace period."""
        case = open_case()
        scheduler.run_scan(now=t0 + timedelta(days=2))
        scheduler.run_scan(now=t0 + timedelta(days=4))

        assert scheduler.run_scan(now=t0 + timedelta(days=4, hours=23)).cases_expired == 0

        result = scheduler.run_scan(now=t0 + timedelta(days=5))
        assert result.cases_expired == 1
        db_session.refresh(case)
        assert case.status == CaseStatus.CLOSED_NO_RECOVERY.value
        assert case.closed_reason == "timeline_exhausted"

    def test_closed_cases_are_not_scanned(self, db_session, scheduler, open_case, t0):
        """Test terminal cases are never scheduled again."""
        case = open_case()
        CaseEngine(db_session).terminate_case(case.id)

        result = scheduler.run_scan(now=t0 + timedelta(days=10))

        assert result.cases_scanned == 0
        assert _steps(db_session, case) == [0]

    def test_company_offsets(self, db_session, scheduler, open_case, t0):
        """Test each company's own timeline is used."""
        db_session.add(RecoverySettings(company_id="biz_fast", reminder_offsets_days=[0, 1]))
        db_session.commit()
        fast = open_case("evt_1", membership_id="mem_fast", company_id="biz_fast")
        slow = open_case("evt_2", membership_id="mem_slow")

        result = scheduler.run_scan(now=t0 + timedelta(days=1))

        assert result.actions_planned == 1
        assert _steps(db_session, fast) == [0, 1]
        assert _steps(db_session, slow) == [0]

    def test_error_on_one_case_does_not_stop_scan(self, db_session, scheduler, open_case, t0):
        """Test a failing case is counted and the rest of the scan continues."""
        open_case("evt_1", membership_id="mem_bad", company_id="biz_bad")
        good = open_case("evt_2", membership_id="mem_good")
        real_resolve = company_config.resolve_company_config

        def resolve(db, company_id):
            if company_id == "biz_bad":
                raise RuntimeError("settings unavailable")
            return real_resolve(db, company_id)

        with patch("recovery.services.scheduler.resolve_company_config", side_effect=resolve):
            result = scheduler.run_scan(now=t0 + timedelta(days=2))

        assert result.errors == 1
        assert result.actions_planned == 1
        assert _steps(db_session, good) == [0, 1]


    def test_newer_case_not_starved_by_older_ones(
        self, db_session, scheduler, open_case, make_event, t0
    ):
        """Test every open case is scanned when there are more than one page of them."""
        older = [open_case(f"evt_{n}", membership_id=f"mem_{n}") for n in range(2)]
        scheduler.run_scan(now=t0 + timedelta(days=2))
        opened_at = t0 + timedelta(days=1)
        newer = CaseEngine(db_session).handle_event(
            make_event("evt_new", membership_id="mem_new", occurred_at=opened_at), opened_at
        )

        with patch.object(settings, "SCHEDULER_PAGE_SIZE", 2):
            result = scheduler.run_scan(now=t0 + timedelta(days=3, hours=12))

        assert result.cases_scanned == 3
        assert result.actions_planned == 1
        assert _steps(db_session, newer) == [0, 1]
        assert all(_steps(db_session, case) == [0, 1] for case in older)

    def test_pages_visit_each_case_once(self, db_session, scheduler, open_case, t0):
        """Test cases sharing a failure time are split across pages without repeats or gaps."""
        cases = [open_case(f"evt_{n}", membership_id=f"mem_{n}") for n in range(5)]

        with patch.object(settings, "SCHEDULER_PAGE_SIZE", 2):
            result = scheduler.run_scan(now=t0 + timedelta(days=2))

        assert result.cases_scanned == 5
        assert result.actions_planned == 5
        assert all(_steps(db_session, case) == [0, 1] for case in cases)

    def test_failing_cases_do_not_block_later_pages(self, db_session, scheduler, open_case, t0):
        """Test cases that keep failing never hide the cases behind them."""
        for n in range(3):
            open_case(f"evt_bad_{n}", membership_id=f"mem_bad_{n}", company_id="biz_bad")
        real_resolve = company_config.resolve_company_config

        def resolve(db, company_id):
            if company_id == "biz_bad":
                raise RuntimeError("settings unavailable")
            return real_resolve(db, company_id)

        good = open_case("evt_good", membership_id="mem_good")

        with (
            patch.object(settings, "SCHEDULER_PAGE_SIZE", 1),
            patch("recovery.services.scheduler.resolve_company_config", side_effect=resolve),
        ):
            result = scheduler.run_scan(now=t0 + timedelta(days=2))

        assert result.errors == 3
        assert result.actions_planned == 1
        assert _steps(db_session, good) == [0, 1]

class TestNextStep:
    def test_smallest_missing_step(self, scheduler, open_case):
        """Test the next step is the first offset without an action."""
        case = open_case()
        assert scheduler.next_step(case, [0, 2, 4]) == 1
        assert scheduler.next_step(case, [0]) is None
