"""Event model: one inbound billing-provider notification."""

from enum import Enum

from sqlalchemy import JSON, Column, Index, String, Text

from recovery.core.database import Base
from recovery.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class EventType(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    MEMBERSHIP_ACTIVATED = "membership_activated"
    MEMBERSHIP_DEACTIVATED = "membership_deactivated"
    UNKNOWN = "unknown"


class Event(Base):
    """Immutable record of a provider event.

    ``provider_event_id`` is the idempotency boundary: the unique index makes a
    redelivered event a no-op duplicate.
    """

    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_membership_id", "membership_id"),
        Index("ix_events_event_type", "event_type"),
        Index("ix_events_processed_at", "processed_at"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    provider_event_id = Column(String(255), unique=True, index=True, nullable=False)
    event_type = Column(String(50), nullable=False)
    provider_type = Column(String(100), nullable=False)
    company_id = Column(String(255), nullable=False)
    membership_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    payload_digest = Column(String(64), nullable=False)
    occurred_at = Column(UTCDateTime, nullable=False)
    received_at = Column(UTCDateTime, nullable=False, default=utc_now)
    processed_at = Column(UTCDateTime, nullable=True)
    processing_error = Column(Text, nullable=True)
