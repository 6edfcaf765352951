"""Lifecycle tests: webhook deliveries, scheduler scans and the worker pool together."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from recovery.core.config import settings
from recovery.models.job import Job, JobStatus, JobType
from recovery.models.recovery_action import ActionOutcome, ActionType, RecoveryAction
from recovery.models.recovery_case import CaseStatus, RecoveryCase
from recovery.models.shared import utc_now
from recovery.services.event_ingestor import EventIngestor
from recovery.services.scheduler import RecoveryScheduler
from recovery.services.worker_pool import WorkerPool


class FakeClock:
    def __init__(self):
        self.now = utc_now().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def billing():
    return AsyncMock()


@pytest.fixture
def pool(clock, notifier, billing):
    # One job per claim, so event jobs always run before action jobs
    return WorkerPool(concurrency=1, batch_size=1, billing=billing, notifier=notifier, clock=clock)


@pytest.fixture
def deliver(db_session, sign, webhook_body):
    def _deliver(event_id: str, event_type: str = "payment.failed", **kwargs):
        body = webhook_body(event_id, event_type=event_type, **kwargs)
        return EventIngestor(db_session).ingest(body, sign(body))

    return _deliver


def _case(db) -> RecoveryCase:
    db.expire_all()
    return db.query(RecoveryCase).one()


def _actions(db, action_type: ActionType) -> list[RecoveryAction]:
    db.expire_all()
    return (
        db.query(RecoveryAction)
        .filter(RecoveryAction.action_type == action_type.value)
        .order_by(RecoveryAction.scheduled_at.asc())
        .all()
    )


class TestRecoveredLifecycle:
    @pytest.mark.asyncio
    async def test_failure_then_payment_recovers(
        self, db_session, pool, clock, notifier, billing, deliver
    ):
        """Test a failed payment is nudged, incentivised, reminded and then recovered."""
        scheduler = RecoveryScheduler(db_session)
        deliver("evt_fail", occurred_at=clock())
        clock.advance(minutes=1)

        assert await pool.run_until_idle() == 3
        case = _case(db_session)
        assert case.status == CaseStatus.OPEN.value
        assert case.incentive_days_granted == settings.DEFAULT_INCENTIVE_DAYS
        billing.add_free_days.assert_awaited_once_with("mem_1", settings.DEFAULT_INCENTIVE_DAYS)
        assert notifier.send.await_count == 1

        # Nothing new is due before the first reminder offset
        assert scheduler.run_scan(now=clock()).actions_planned == 0

        clock.advance(days=2)
        assert scheduler.run_scan(now=clock()).actions_planned == 1
        assert await pool.run_until_idle() == 1
        assert notifier.send.await_count == 2

        clock.advance(days=2)
        assert scheduler.run_scan(now=clock()).actions_planned == 1
        # The second reminder is pending when the payment goes through
        deliver("evt_paid", event_type="payment.succeeded", occurred_at=clock(), amount_cents=1500)

        assert await pool.run_until_idle() == 1

        case = _case(db_session)
        assert case.status == CaseStatus.RECOVERED.value
        assert case.recovered_amount_cents == 1500
        assert case.closed_reason == "payment_succeeded"
        assert notifier.send.await_count == 2

        [_, last_reminder] = _actions(db_session, ActionType.REMINDER)
        assert last_reminder.outcome == ActionOutcome.SKIPPED.value
        [cancelled] = db_session.query(Job).filter_by(status=JobStatus.CANCELLED.value).all()
        assert cancelled.job_type == JobType.EXECUTE_ACTION.value
        assert db_session.query(Job).filter_by(status=JobStatus.PENDING.value).count() == 0
        assert len(_actions(db_session, ActionType.TERMINATE_CASE)) == 1

        clock.advance(days=5)
        result = scheduler.run_scan(now=clock())
        assert result.cases_scanned == 0
        assert result.cases_expired == 0

    @pytest.mark.asyncio
    async def test_redelivery_does_not_duplicate_work(
        self, db_session, pool, clock, notifier, billing, deliver
    ):
        """Test a redelivered failure produces no second nudge or grant."""
        deliver("evt_fail", occurred_at=clock())
        duplicate = deliver("evt_fail", occurred_at=clock())
        clock.advance(minutes=1)

        assert duplicate.duplicate is True
        assert await pool.run_until_idle() == 3
        assert notifier.send.await_count == 1
        billing.add_free_days.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repeated_failure_keeps_timeline(self, db_session, pool, clock, deliver):
        """Test a second failure is counted without restarting the reminders."""
        deliver("evt_fail_1", occurred_at=clock())
        clock.advance(minutes=1)
        await pool.run_until_idle()
        first_failure_at = _case(db_session).first_failure_at

        clock.advance(days=1)
        deliver("evt_fail_2", occurred_at=clock())
        await pool.run_until_idle()

        case = _case(db_session)
        assert case.attempts == 2
        assert case.first_failure_at == first_failure_at
        assert len(_actions(db_session, ActionType.NUDGE)) == 1


class TestExpiredLifecycle:
    @pytest.mark.asyncio
    async def test_timeline_exhausted_then_expired(
        self, db_session, pool, clock, notifier, deliver
    ):
        """Test an unpaid case runs its full timeline and closes after the grace period."""
        scheduler = RecoveryScheduler(db_session)
        deliver("evt_fail", occurred_at=clock())
        clock.advance(minutes=1)
        await pool.run_until_idle()

        for _ in range(2):
            clock.advance(days=2)
            assert scheduler.run_scan(now=clock()).actions_planned == 1
            assert await pool.run_until_idle() == 1

        assert notifier.send.await_count == 3
        assert [action.timeline_step for action in _actions(db_session, ActionType.REMINDER)] == [1, 2]

        clock.advance(hours=settings.EXPIRY_GRACE_HOURS - 1)
        assert scheduler.run_scan(now=clock()).cases_expired == 0

        clock.advance(hours=1)
        assert scheduler.run_scan(now=clock()).cases_expired == 1

        case = _case(db_session)
        assert case.status == CaseStatus.CLOSED_NO_RECOVERY.value
        assert case.closed_reason == "timeline_exhausted"
        assert _actions(db_session, ActionType.CANCEL_MEMBERSHIP) == []
        assert scheduler.run_scan(now=clock()).cases_scanned == 0

    @pytest.mark.asyncio
    async def test_expiry_cancels_membership_when_configured(
        self, db_session, pool, clock, billing, deliver
    ):
        """Test expiry schedules and executes a membership cancellation."""
        scheduler = RecoveryScheduler(db_session)
        deliver("evt_fail", occurred_at=clock())
        clock.advance(minutes=1)
        await pool.run_until_idle()
        for _ in range(2):
            clock.advance(days=2)
            scheduler.run_scan(now=clock())
            await pool.run_until_idle()

        clock.advance(hours=settings.EXPIRY_GRACE_HOURS)
        with patch.object(settings, "CANCEL_MEMBERSHIP_ON_EXPIRY", True):
            assert scheduler.run_scan(now=clock()).cases_expired == 1

        assert await pool.run_until_idle() == 1
        billing.cancel_membership.assert_awaited_once()
        [cancel] = _actions(db_session, ActionType.CANCEL_MEMBERSHIP)
        assert cancel.outcome == ActionOutcome.SUCCESS.value

    @pytest.mark.asyncio
    async def test_new_failure_after_close_opens_new_case(self, db_session, pool, clock, deliver):
        """Test a membership gets a fresh case once its previous one closed."""
        deliver("evt_fail_1", occurred_at=clock())
        clock.advance(minutes=1)
        await pool.run_until_idle()
        deliver("evt_gone", event_type="membership.deactivated", occurred_at=clock())
        await pool.run_until_idle()

        clock.advance(days=30)
        deliver("evt_fail_2", occurred_at=clock())
        await pool.run_until_idle()

        db_session.expire_all()
        statuses = sorted(case.status for case in db_session.query(RecoveryCase).all())
        assert statuses == [CaseStatus.CLOSED_NO_RECOVERY.value, CaseStatus.OPEN.value]
