from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from recovery.core.database import get_db
from recovery.core.errors import InvalidStateError, NotFoundError
from recovery.repositories.recovery_action_repository import RecoveryActionRepository
from recovery.repositories.recovery_case_repository import RecoveryCaseRepository
from recovery.schemas.recovery_case import (
    CaseTerminateRequest,
    RecoveryActionResponse,
    RecoveryCaseDetailResponse,
    RecoveryCaseResponse,
)
from recovery.services.case_engine import CaseEngine

router = APIRouter()


@router.get("/{case_id}", response_model=RecoveryCaseDetailResponse)
async def get_case(case_id: UUID, db: Session = Depends(get_db)) -> RecoveryCaseDetailResponse:
    """Get a recovery case with its actions in schedule order."""
    case = RecoveryCaseRepository(db).get_by_id(case_id)
    if not case:
        raise HTTPException(status_code=404, detail="Recovery case not found")
    actions = RecoveryActionRepository(db).get_for_case(case_id)
    return RecoveryCaseDetailResponse(
        **RecoveryCaseResponse.model_validate(case).model_dump(),
        actions=[RecoveryActionResponse.model_validate(a) for a in actions],
    )


@router.post("/{case_id}/terminate", response_model=RecoveryCaseResponse)
async def terminate_case(
    case_id: UUID,
    data: CaseTerminateRequest | None = None,
    db: Session = Depends(get_db),
) -> RecoveryCaseResponse:
    """Close an open case without recovery, optionally cancelling the membership."""
    data = data or CaseTerminateRequest()
    try:
        case = CaseEngine(db).terminate_case(
            case_id,
            cancel_membership=data.cancel_membership,
            reason=data.reason,
            actor="api",
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    except InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return RecoveryCaseResponse.model_validate(case)
