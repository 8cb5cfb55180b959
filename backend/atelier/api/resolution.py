# backend/atelier/api/resolution.py
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..engine import resolution as engine
from ..engine.policy import EnginePolicy
from .deps import get_db, get_current_user, get_now, get_policy, require_admin, CurrentUser
from .tickets import TicketOut, VersionGuard

router = APIRouter(tags=["resolution"])


# ---------- Pydantic schemas ----------
class ResolutionOpen(BaseModel):
    target_type: Literal[
        "cancelTicket", "revisionTicket", "changeTicket",
        "finalUpload", "progressMilestoneUpload", "revisionUpload",
    ]
    target_id: int = Field(..., ge=1)
    description: str
    evidence: List[str] = Field(default_factory=list)


class Counterproof(BaseModel):
    description: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)
    expected_version: Optional[int] = None


class ResolveIn(BaseModel):
    # free string on purpose: values outside the enum become InvalidDecision, not a schema error
    decision: str
    resolution_note: str = ""
    expected_version: Optional[int] = None


# ---------- Endpoints ----------
@router.post(
    "/contracts/{contract_id}/resolution",
    response_model=TicketOut,
    status_code=status.HTTP_201_CREATED,
)
def open_resolution(
    body: ResolutionOpen,
    contract_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    ticket = engine.open_resolution(
        db, current, contract_id, body.target_type, body.target_id, body.description, body.evidence, now, policy
    )
    return TicketOut.model_validate(ticket)


@router.post("/resolution/{ticket_id}/counterproof", response_model=TicketOut)
def counterproof(
    body: Counterproof,
    ticket_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
):
    ticket = engine.submit_counter(
        db, current, ticket_id, body.description, body.evidence, now, body.expected_version
    )
    return TicketOut.model_validate(ticket)


@router.post("/resolution/{ticket_id}/resolve", response_model=TicketOut)
def resolve(
    body: ResolveIn,
    ticket_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    ticket = engine.resolve(
        db, current, ticket_id, body.decision, body.resolution_note, now, policy, body.expected_version
    )
    return TicketOut.model_validate(ticket)


@router.post("/resolution/{ticket_id}/cancel", response_model=TicketOut)
def cancel_resolution(
    body: Optional[VersionGuard] = None,
    ticket_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
):
    expected = body.expected_version if body else None
    return TicketOut.model_validate(engine.cancel_resolution(db, current, ticket_id, now, expected))


@router.get("/admin/resolution", response_model=List[TicketOut])
def list_resolution(
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(require_admin),
):
    return [TicketOut.model_validate(t) for t in engine.pending_for_admin(db, current, status_filter)]
