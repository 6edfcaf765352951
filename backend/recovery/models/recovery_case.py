"""RecoveryCase model: one membership's failed-payment episode."""

from enum import Enum

from sqlalchemy import Column, Index, Integer, String, Text, text

from recovery.core.database import Base
from recovery.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class CaseStatus(str, Enum):
    OPEN = "open"
    RECOVERED = "recovered"
    CLOSED_NO_RECOVERY = "closed_no_recovery"


class RecoveryCase(Base):
    """RecoveryCase model.

    At most one open case per membership, enforced by a partial unique index so
    that concurrent webhook deliveries cannot create two.
    """

    __tablename__ = "recovery_cases"
    __table_args__ = (
        Index(
            "uq_recovery_cases_open_membership",
            "membership_id",
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
        Index("ix_recovery_cases_company_status", "company_id", "status"),
        Index("ix_recovery_cases_status_first_failure_at", "status", "first_failure_at"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    company_id = Column(String(255), nullable=False)
    membership_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=True)
    status = Column(String(30), nullable=False, default=CaseStatus.OPEN.value)
    first_failure_at = Column(UTCDateTime, nullable=False)
    last_action_at = Column(UTCDateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    incentive_days_granted = Column(Integer, nullable=False, default=0)
    recovered_amount_cents = Column(Integer, nullable=True)
    failure_reason = Column(String(255), nullable=True)
    closed_reason = Column(Text, nullable=True)
    last_event_id = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
