from sqlalchemy.orm import Session

from recovery.models.recovery_settings import RecoverySettings


class RecoverySettingsRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_company(self, company_id: str) -> RecoverySettings | None:
        return (
            self.db.query(RecoverySettings)
            .filter(RecoverySettings.company_id == company_id)
            .first()
        )
