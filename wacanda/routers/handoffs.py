from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from wacanda.database import get_db
from wacanda.schemas.handoff import (
    AssignHandoffRequest,
    HandoffRequestResponse,
    HandoffStatisticsResponse,
    ResolveHandoffRequest,
)
from wacanda.services.handoff_service import (
    assign_handoff,
    handoff_statistics,
    list_pending_handoffs,
    resolve_handoff,
)
from wacanda.services.result import Result

router = APIRouter(prefix="/handoffs", tags=["handoffs"])

ERROR_STATUS = {"not_found": status.HTTP_404_NOT_FOUND, "invalid_transition": status.HTTP_409_CONFLICT}


def _unwrap_or_http(db: Session, result: Result):
    if not result.ok:
        db.rollback()
        raise HTTPException(
            status_code=ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST), detail=result.error
        )
    db.commit()
    return result.value


@router.get("/pending", response_model=List[HandoffRequestResponse])
def get_pending_handoffs(owner_id: UUID, urgency: Optional[str] = None, db: Session = Depends(get_db)):
    return list_pending_handoffs(db, owner_id, urgency=urgency)


@router.get("/statistics", response_model=HandoffStatisticsResponse)
def get_handoff_statistics(owner_id: UUID, db: Session = Depends(get_db)):
    return handoff_statistics(db, owner_id)


@router.post("/{handoff_id}/assign", response_model=HandoffRequestResponse)
def assign(handoff_id: UUID, body: AssignHandoffRequest, db: Session = Depends(get_db)):
    return _unwrap_or_http(db, assign_handoff(db, handoff_id, body.agent_id))


@router.post("/{handoff_id}/resolve", response_model=HandoffRequestResponse)
def resolve(handoff_id: UUID, body: ResolveHandoffRequest, db: Session = Depends(get_db)):
    return _unwrap_or_http(db, resolve_handoff(db, handoff_id, body.resolution_notes))
