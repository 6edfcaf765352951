"""Webhook ingestion: verify, parse, deduplicate, persist, enqueue.

The unique ``provider_event_id`` is the idempotency boundary. Nothing beyond the
event row and its ``process_event`` job happens in the request; case handling
runs in the job queue, which owns retries.
"""

import hashlib
import hmac
import json
import logging
import re
import time
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from recovery.core.config import settings
from recovery.core.errors import InvalidSignature, MalformedPayload
from recovery.models.event import EventType
from recovery.models.job import PRIORITY_EVENT, JobType
from recovery.models.shared import ensure_utc, generate_uuid, utc_now
from recovery.repositories.event_repository import EventRepository
from recovery.schemas.event import IngestResult, ProviderEvent
from recovery.schemas.job import ProcessEventPayload
from recovery.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

_HEX = re.compile(r"^[0-9a-fA-F]+$")

# Provider type names mapped onto the engine's event types
EVENT_TYPE_ALIASES: dict[str, EventType] = {
    "payment_failed": EventType.PAYMENT_FAILED,
    "payment.failed": EventType.PAYMENT_FAILED,
    "invoice.payment_failed": EventType.PAYMENT_FAILED,
    "payment_succeeded": EventType.PAYMENT_SUCCEEDED,
    "payment.succeeded": EventType.PAYMENT_SUCCEEDED,
    "invoice.paid": EventType.PAYMENT_SUCCEEDED,
    "membership_activated": EventType.MEMBERSHIP_ACTIVATED,
    "membership.activated": EventType.MEMBERSHIP_ACTIVATED,
    "membership_went_valid": EventType.MEMBERSHIP_ACTIVATED,
    "membership.went_valid": EventType.MEMBERSHIP_ACTIVATED,
    "membership_deactivated": EventType.MEMBERSHIP_DEACTIVATED,
    "membership.deactivated": EventType.MEMBERSHIP_DEACTIVATED,
    "membership_went_invalid": EventType.MEMBERSHIP_DEACTIVATED,
    "membership.went_invalid": EventType.MEMBERSHIP_DEACTIVATED,
}

MEMBERSHIP_EVENTS = frozenset({EventType.MEMBERSHIP_ACTIVATED, EventType.MEMBERSHIP_DEACTIVATED})


def generate_hmac_signature(payload_bytes: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of ``payload_bytes``."""
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()


def parse_signature_header(signature_header: str) -> str | None:
    """Extract the hex digest from ``sha256=<hex>``, ``v1,<hex>`` or bare ``<hex>``."""
    value = signature_header.strip()
    if value.startswith("sha256="):
        digest = value[len("sha256="):]
        return digest if _HEX.match(digest) else None
    parts = value.split(",")
    if len(parts) == 2 and parts[0].strip().lower() == "v1":
        digest = parts[1].strip()
        return digest if _HEX.match(digest) else None
    if _HEX.match(value):
        return value
    return None


def _check_timestamp(timestamp_header: str | None, now: float) -> None:
    if timestamp_header is None or timestamp_header == "":
        if settings.WEBHOOK_REQUIRE_TIMESTAMP:
            raise InvalidSignature("Missing webhook timestamp")
        return
    try:
        timestamp = int(timestamp_header.strip())
    except ValueError as exc:
        raise InvalidSignature("Malformed webhook timestamp") from exc
    if timestamp < 0:
        raise InvalidSignature("Malformed webhook timestamp")
    skew = abs(now - timestamp)
    if skew > settings.WEBHOOK_TIMESTAMP_SKEW_SECONDS:
        raise InvalidSignature(
            f"Webhook timestamp outside allowed window ({int(skew)}s > "
            f"{settings.WEBHOOK_TIMESTAMP_SKEW_SECONDS}s)"
        )


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    timestamp_header: str | None = None,
    secret: str | None = None,
    now: float | None = None,
) -> None:
    """Raise ``InvalidSignature`` unless the body carries a valid signature.

    The expected digest is always computed so that rejection takes the same time
    whatever part of the check fails.
    """
    expected = generate_hmac_signature(raw_body, secret or settings.WEBHOOK_SECRET)
    provided = parse_signature_header(signature_header) if signature_header else None
    signature_ok = provided is not None and hmac.compare_digest(
        expected, provided.lower()
    )
    _check_timestamp(timestamp_header, time.time() if now is None else now)
    if not signature_ok:
        raise InvalidSignature("Invalid webhook signature")


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    return str(value) if value is not None else None


def _parse_occurred_at(value: Any) -> datetime:
    if value in (None, ""):
        return utc_now()
    if isinstance(value, bool):
        raise MalformedPayload(f"Invalid event timestamp: {value!r}")
    try:
        if isinstance(value, int | float):
            # Epoch seconds, or milliseconds from providers that send them
            seconds = value / 1000 if value > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=UTC)
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except (ValueError, OverflowError, OSError) as exc:
        raise MalformedPayload(f"Invalid event timestamp: {value!r}") from exc


def _parse_amount(value: Any) -> int | None:
    """Amounts are integer minor units; anything fractional is rejected."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise MalformedPayload(f"Amount must be in integer minor units: {value!r}")


def parse_event(raw_body: bytes) -> ProviderEvent:
    """Turn a verified webhook body into a ``ProviderEvent``.

    Raises:
        MalformedPayload: the body is not a usable event.
    """
    try:
        body = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload("Webhook body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise MalformedPayload("Webhook body must be a JSON object")

    provider_event_id = _first(body.get("id"), body.get("event_id"))
    provider_type = body.get("type") or body.get("action")
    if not provider_event_id or not provider_type:
        raise MalformedPayload("Webhook body is missing the event id or type")

    event_type = EVENT_TYPE_ALIASES.get(str(provider_type).lower(), EventType.UNKNOWN)
    data = _as_dict(body.get("data"))
    membership = _as_dict(data.get("membership"))
    payment = _as_dict(data.get("payment"))

    membership_id = _first(
        data.get("membership_id"),
        membership.get("id"),
        data.get("id") if event_type in MEMBERSHIP_EVENTS else None,
    )
    if event_type != EventType.UNKNOWN and not membership_id:
        raise MalformedPayload(f"{provider_type} event {provider_event_id} has no membership id")

    amount = _first(data.get("amount"), payment.get("amount"), data.get("amount_cents"))
    company_id = _first(data.get("company_id"), body.get("company_id")) or settings.DEFAULT_COMPANY_ID
    try:
        return ProviderEvent(
            provider_event_id=str(provider_event_id),
            provider_type=str(provider_type),
            event_type=event_type,
            company_id=str(company_id),
            membership_id=str(membership_id) if membership_id else None,
            user_id=_text(_first(data.get("user_id"), membership.get("user_id"))),
            amount_cents=_parse_amount(amount),
            currency=_first(data.get("currency"), payment.get("currency")),
            failure_reason=_text(
                _first(data.get("failure_reason"), payment.get("failure_reason"), data.get("reason"))
            ),
            occurred_at=_parse_occurred_at(_first(body.get("created_at"), body.get("occurred_at"))),
        )
    except (ValidationError, ValueError, TypeError) as exc:
        raise MalformedPayload(f"Invalid webhook payload: {exc}") from exc


class EventIngestor:
    """Service turning webhook deliveries into stored events and jobs."""

    def __init__(self, db: Session):
        self.db = db
        self.event_repo = EventRepository(db)
        self.queue = JobQueue(db)

    def ingest(
        self,
        raw_body: bytes,
        signature_header: str | None,
        timestamp_header: str | None = None,
    ) -> IngestResult:
        """Verify and store one delivery.

        Raises:
            InvalidSignature: authentication failed; nothing is stored.
            MalformedPayload: the body is not a usable event; nothing is stored.
        """
        verify_signature(raw_body, signature_header, timestamp_header)
        data = parse_event(raw_body)
        digest = hashlib.sha256(raw_body).hexdigest()

        event_id = generate_uuid()
        job = self.queue.build(
            JobType.PROCESS_EVENT,
            ProcessEventPayload(event_id=event_id),
            priority=PRIORITY_EVENT,
        )
        event = self.event_repo.create_if_absent(data, digest, event_id=event_id, job=job)
        if event is None:
            existing = self.event_repo.get_by_provider_event_id(data.provider_event_id)
            logger.info("Duplicate delivery of event %s ignored", data.provider_event_id)
            return IngestResult(
                event_id=existing.id if existing else None,  # type: ignore[arg-type]
                provider_event_id=data.provider_event_id,
                duplicate=True,
            )

        logger.info(
            "Accepted %s event %s (membership %s)",
            data.event_type.value,
            data.provider_event_id,
            data.membership_id,
        )
        return IngestResult(
            event_id=event.id,  # type: ignore[arg-type]
            provider_event_id=data.provider_event_id,
            duplicate=False,
            job_id=job.id,  # type: ignore[arg-type]
        )
