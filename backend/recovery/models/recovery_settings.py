"""Per-company recovery settings (managed elsewhere, read here)."""

from sqlalchemy import JSON, Boolean, Column, Integer, String

from recovery.core.database import Base
from recovery.models.shared import UTCDateTime, UUIDType, generate_uuid, utc_now


class RecoverySettings(Base):
    __tablename__ = "recovery_settings"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    company_id = Column(String(255), unique=True, index=True, nullable=False)
    enable_push = Column(Boolean, nullable=False, default=True)
    enable_dm = Column(Boolean, nullable=False, default=False)
    incentive_days = Column(Integer, nullable=False, default=0)
    reminder_offsets_days = Column(JSON, nullable=False, default=lambda: [0, 2, 4])

    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
