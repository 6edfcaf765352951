"""Handlers for every job type, keyed by ``JobType``.

Handlers are async, receive a ``HandlerContext`` with their own session and the
validated payload, and raise to fail the attempt. Each one re-checks the stored
state first so that retries and late runs after cancellation have no effect.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.orm import Session

from recovery.core.errors import PermanentError
from recovery.models.job import Job, JobType
from recovery.models.recovery_action import (
    CASE_BOUND_ACTIONS,
    ActionOutcome,
    ActionType,
    RecoveryAction,
)
from recovery.models.recovery_case import CaseStatus, RecoveryCase
from recovery.models.shared import utc_now
from recovery.repositories.event_repository import EventRepository
from recovery.repositories.recovery_action_repository import (
    EXECUTABLE_OUTCOMES,
    RecoveryActionRepository,
)
from recovery.repositories.recovery_case_repository import RecoveryCaseRepository
from recovery.schemas.job import ExecuteActionPayload, ProcessEventPayload
from recovery.services.billing_client import BillingClient
from recovery.services.case_engine import CaseEngine
from recovery.services.company_config import resolve_company_config
from recovery.services.notifier import Notifier, build_message

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    db: Session
    job: Job
    billing: BillingClient
    notifier: Notifier
    now: datetime = field(default_factory=utc_now)


Handler = Callable[[HandlerContext, Any], Awaitable[None]]
DeadLetterHook = Callable[[HandlerContext, Any, str], None]


@dataclass(frozen=True)
class JobDefinition:
    payload_model: type[BaseModel]
    handler: Handler
    on_dead_letter: DeadLetterHook | None = None


async def process_event(ctx: HandlerContext, payload: ProcessEventPayload) -> None:
    """Run the case engine for a stored event, once."""
    event_repo = EventRepository(ctx.db)
    event = event_repo.get_by_id(payload.event_id)
    if event is None:
        raise PermanentError(f"Event {payload.event_id} not found")
    if event.processed_at is not None:
        logger.debug("Event %s already processed", event.provider_event_id)
        return

    event_id: UUID = event.id  # type: ignore[assignment]
    try:
        CaseEngine(ctx.db).handle_event(event, ctx.now)
    except Exception as exc:
        ctx.db.rollback()
        event_repo.record_error(event_id, f"{type(exc).__name__}: {exc}")
        raise
    event_repo.mark_processed(event_id)


def process_event_dead_lettered(ctx: HandlerContext, payload: ProcessEventPayload, error: str) -> None:
    EventRepository(ctx.db).record_error(payload.event_id, f"dead-lettered: {error}")


def _skip(ctx: HandlerContext, action: RecoveryAction, reason: str) -> None:
    RecoveryActionRepository(ctx.db).mark_outcome(
        action.id,  # type: ignore[arg-type]
        ActionOutcome.SKIPPED,
        ctx.now,
        details={"skipped_reason": reason},
    )
    logger.info("Skipped %s action %s: %s", action.action_type, action.id, reason)


async def _send_notifications(
    ctx: HandlerContext, action: RecoveryAction, case: RecoveryCase
) -> dict[str, Any] | None:
    config = resolve_company_config(ctx.db, str(case.company_id))
    channels = config.channels
    if not case.user_id:
        _skip(ctx, action, "no_user")
        return None
    if not channels:
        _skip(ctx, action, "no_channels_enabled")
        return None

    action_type = ActionType(action.action_type)
    message = build_message(action_type, int(case.incentive_days_granted or 0))
    metadata = {
        "case_id": str(case.id),
        "action_id": str(action.id),
        "timeline_step": action.timeline_step,
    }
    for channel in channels:
        await ctx.notifier.send(channel, str(case.user_id), message, metadata)
    return {"delivered_channels": [channel.value for channel in channels]}


async def execute_action(ctx: HandlerContext, payload: ExecuteActionPayload) -> None:
    """Execute one recovery action against its case."""
    action_repo = RecoveryActionRepository(ctx.db)
    action = action_repo.get_by_id(payload.action_id)
    if action is None:
        raise PermanentError(f"Recovery action {payload.action_id} not found")
    if action.outcome not in EXECUTABLE_OUTCOMES:
        logger.debug("Action %s already %s", action.id, action.outcome)
        return

    case = RecoveryCaseRepository(ctx.db).get_by_id(action.case_id)  # type: ignore[arg-type]
    if case is None:
        raise PermanentError(f"Recovery case {action.case_id} not found")

    if action.action_type in CASE_BOUND_ACTIONS and case.status != CaseStatus.OPEN.value:
        _skip(ctx, action, f"case_{case.status}")
        return
    if (
        action.action_type == ActionType.CANCEL_MEMBERSHIP.value
        and case.status == CaseStatus.RECOVERED.value
    ):
        _skip(ctx, action, "case_recovered")
        return

    action_id: UUID = action.id  # type: ignore[assignment]
    action_type = ActionType(action.action_type)
    try:
        if action_type in (ActionType.NUDGE, ActionType.REMINDER):
            details = await _send_notifications(ctx, action, case)
            if details is None:
                return
        elif action_type == ActionType.INCENTIVE_GRANT:
            days = int((action.details or {}).get("days", 0))
            granted = await CaseEngine(ctx.db).grant_incentive(case, days, ctx.billing)
            if not granted:
                _skip(ctx, action, "incentive_already_granted")
                return
            details = {"days": days}
        elif action_type == ActionType.CANCEL_MEMBERSHIP:
            reason = (action.details or {}).get("reason")
            await ctx.billing.cancel_membership(str(case.membership_id), reason)
            details = {"cancelled": True}
        else:
            details = {}
    except Exception as exc:
        ctx.db.rollback()
        action_repo.mark_outcome(
            action_id, ActionOutcome.FAILED, ctx.now, details={"error": str(exc)[:500]}
        )
        raise

    action_repo.mark_outcome(action_id, ActionOutcome.SUCCESS, ctx.now, details=details)
    RecoveryCaseRepository(ctx.db).touch_last_action(case.id, ctx.now)  # type: ignore[arg-type]
    logger.info("Executed %s action %s for case %s", action_type.value, action_id, case.id)


def execute_action_dead_lettered(ctx: HandlerContext, payload: ExecuteActionPayload, error: str) -> None:
    RecoveryActionRepository(ctx.db).mark_outcome(
        payload.action_id,
        ActionOutcome.FAILED,
        utc_now(),
        details={"error": error[:500], "dead_lettered": True},
    )


JOB_REGISTRY: dict[JobType, JobDefinition] = {
    JobType.PROCESS_EVENT: JobDefinition(
        payload_model=ProcessEventPayload,
        handler=process_event,
        on_dead_letter=process_event_dead_lettered,
    ),
    JobType.EXECUTE_ACTION: JobDefinition(
        payload_model=ExecuteActionPayload,
        handler=execute_action,
        on_dead_letter=execute_action_dead_lettered,
    ),
}


def get_definition(job_type: str, registry: dict[JobType, JobDefinition] | None = None) -> JobDefinition:
    """Look up the handler definition for a stored job type.

    Raises:
        PermanentError: the job type is unknown or has no handler.
    """
    registry = registry if registry is not None else JOB_REGISTRY
    try:
        return registry[JobType(job_type)]
    except (ValueError, KeyError) as exc:
        raise PermanentError(f"No handler registered for job type '{job_type}'") from exc
