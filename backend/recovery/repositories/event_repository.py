import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recovery.models.event import Event
from recovery.models.job import Job
from recovery.models.shared import generate_uuid, utc_now
from recovery.schemas.event import ProviderEvent

logger = logging.getLogger(__name__)


class EventRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: UUID) -> Event | None:
        return self.db.query(Event).filter(Event.id == event_id).first()

    def get_by_provider_event_id(self, provider_event_id: str) -> Event | None:
        return (
            self.db.query(Event)
            .filter(Event.provider_event_id == provider_event_id)
            .first()
        )

    def create_if_absent(
        self,
        data: ProviderEvent,
        payload_digest: str,
        event_id: UUID | None = None,
        job: Job | None = None,
    ) -> Event | None:
        """Insert the event, or return None when ``provider_event_id`` already exists.

        The unique index decides; a concurrent delivery of the same event loses the
        insert and is reported as a duplicate. ``job`` is committed with the event.
        """
        event = Event(
            id=event_id or generate_uuid(),
            provider_event_id=data.provider_event_id,
            event_type=data.event_type.value,
            provider_type=data.provider_type,
            company_id=data.company_id,
            membership_id=data.membership_id,
            payload=data.minimal_payload(),
            payload_digest=payload_digest,
            occurred_at=data.occurred_at,
            received_at=utc_now(),
        )
        self.db.add(event)
        if job is not None:
            self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        self.db.refresh(event)
        return event

    def mark_processed(self, event_id: UUID, processed_at: datetime | None = None) -> bool:
        updated = (
            self.db.query(Event)
            .filter(Event.id == event_id, Event.processed_at.is_(None))
            .update(
                {Event.processed_at: processed_at or utc_now(), Event.processing_error: None},
                synchronize_session=False,
            )
        )
        self.db.commit()
        return bool(updated)

    def record_error(self, event_id: UUID, error: str) -> None:
        self.db.query(Event).filter(Event.id == event_id).update(
            {Event.processing_error: error[:2000]}, synchronize_session=False
        )
        self.db.commit()

    def delete_processed_before(self, cutoff: datetime) -> int:
        """Retention sweep: drop processed events received before ``cutoff``."""
        deleted = (
            self.db.query(Event)
            .filter(Event.processed_at.isnot(None), Event.received_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return int(deleted)
