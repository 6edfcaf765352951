from recovery.repositories.event_repository import EventRepository
from recovery.repositories.job_repository import JobRepository
from recovery.repositories.recovery_action_repository import RecoveryActionRepository
from recovery.repositories.recovery_case_repository import RecoveryCaseRepository
from recovery.repositories.recovery_settings_repository import RecoverySettingsRepository

__all__ = [
    "EventRepository",
    "JobRepository",
    "RecoveryActionRepository",
    "RecoveryCaseRepository",
    "RecoverySettingsRepository",
]
