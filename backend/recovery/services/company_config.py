"""Per-company recovery configuration with application defaults as fallback."""

from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from recovery.core.config import settings
from recovery.models.recovery_action import ActionChannel
from recovery.repositories.recovery_settings_repository import RecoverySettingsRepository


@dataclass(frozen=True)
class CompanyRecoveryConfig:
    company_id: str
    enable_push: bool = True
    enable_dm: bool = False
    incentive_days: int = 0
    reminder_offsets_days: list[int] = field(default_factory=lambda: [0, 2, 4])

    @property
    def channels(self) -> list[ActionChannel]:
        """Notification channels enabled for the company, push first."""
        channels = []
        if self.enable_push:
            channels.append(ActionChannel.PUSH)
        if self.enable_dm:
            channels.append(ActionChannel.DM)
        return channels


def _normalize_offsets(offsets: list[int] | None) -> list[int]:
    if not offsets:
        return list(settings.DEFAULT_REMINDER_OFFSETS_DAYS)
    return sorted({max(int(days), 0) for days in offsets})


def _clamp_incentive(days: int | None) -> int:
    if days is None:
        return settings.DEFAULT_INCENTIVE_DAYS
    return min(max(int(days), 0), 365)


def resolve_company_config(db: Session, company_id: str) -> CompanyRecoveryConfig:
    """Load the company's recovery settings, falling back to ``Settings`` defaults."""
    row = RecoverySettingsRepository(db).get_by_company(company_id)
    if row is None:
        return CompanyRecoveryConfig(
            company_id=company_id,
            enable_push=settings.DEFAULT_ENABLE_PUSH,
            enable_dm=settings.DEFAULT_ENABLE_DM,
            incentive_days=settings.DEFAULT_INCENTIVE_DAYS,
            reminder_offsets_days=_normalize_offsets(settings.DEFAULT_REMINDER_OFFSETS_DAYS),
        )
    return CompanyRecoveryConfig(
        company_id=company_id,
        enable_push=bool(row.enable_push),
        enable_dm=bool(row.enable_dm),
        incentive_days=_clamp_incentive(row.incentive_days),  # type: ignore[arg-type]
        reminder_offsets_days=_normalize_offsets(row.reminder_offsets_days),  # type: ignore[arg-type]
    )
