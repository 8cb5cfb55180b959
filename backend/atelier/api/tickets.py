# backend/atelier/api/tickets.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..engine import tickets as engine
from ..engine.errors import ValidationError
from ..engine.policy import EnginePolicy
from .deps import get_db, get_current_user, get_now, get_policy, CurrentUser

router = APIRouter(tags=["tickets"])


# ---------- Pydantic schemas ----------
class TicketOpen(BaseModel):
    description: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)
    work_percentage: Optional[int] = None    # cancel
    milestone_idx: Optional[int] = None      # revision
    change: Optional[engine.ChangeRequest] = None  # change


class TicketRespond(BaseModel):
    accept: bool
    counter_description: Optional[str] = None
    counter_evidence: List[str] = Field(default_factory=list)
    fee: Optional[int] = Field(None, ge=0)
    expected_version: Optional[int] = None


class FeeDecision(BaseModel):
    accept: bool
    expected_version: Optional[int] = None


class VersionGuard(BaseModel):
    expected_version: Optional[int] = None


class TicketOut(BaseModel):
    id: int
    contract_id: int
    kind: str
    status: str
    outcome: Optional[str] = None
    submitted_by_id: int
    submitted_by_role: str
    counterparty_role: str
    description: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)
    counter_description: Optional[str] = None
    counter_evidence: List[str] = Field(default_factory=list)
    counter_expires_at: datetime
    countered_at: Optional[datetime] = None
    escalated_to_id: Optional[int] = None

    work_percentage: Optional[int] = None
    milestone_idx: Optional[int] = None
    fee: Optional[int] = None
    fulfilled_at: Optional[datetime] = None
    change_request: Optional[Dict[str, Any]] = None
    proposed_fee: Optional[int] = None
    price_delta: Optional[int] = None
    applied_terms_version: Optional[int] = None
    runtime_fee: int = 0

    target_type: Optional[str] = None
    target_id: Optional[int] = None
    decision: Optional[str] = None
    resolution_note: Optional[str] = None
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None

    created_at: datetime
    version: int

    class Config:
        from_attributes = True


# ---------- Endpoints ----------
@router.post(
    "/contracts/{contract_id}/tickets/{kind}",
    response_model=TicketOut,
    status_code=status.HTTP_201_CREATED,
)
def open_ticket(
    body: TicketOpen,
    contract_id: int = Path(..., ge=1),
    kind: str = Path(..., pattern="^(cancel|revision|change)$"),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    if kind == "cancel":
        ticket = engine.open_cancel(
            db, current, contract_id, body.description, body.evidence, body.work_percentage, now, policy
        )
    elif kind == "revision":
        ticket = engine.open_revision(
            db, current, contract_id, body.description, body.evidence, body.milestone_idx, now, policy
        )
    else:
        if body.change is None:
            raise ValidationError("change", "a change request is required")
        ticket = engine.open_change(
            db, current, contract_id, body.change, body.description, body.evidence, now, policy
        )
    return TicketOut.model_validate(ticket)


@router.get("/tickets/{ticket_id}", response_model=TicketOut)
def get_ticket(
    ticket_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    return TicketOut.model_validate(engine.read_ticket(db, current, ticket_id))


@router.post("/tickets/{ticket_id}/respond", response_model=TicketOut)
def respond(
    body: TicketRespond,
    ticket_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    ticket = engine.respond(
        db, current, ticket_id, body.accept, body.counter_description, body.counter_evidence, body.fee,
        now, policy, expected_version=body.expected_version,
    )
    return TicketOut.model_validate(ticket)


@router.post("/tickets/{ticket_id}/confirm-fee", response_model=TicketOut)
def confirm_fee(
    body: FeeDecision,
    ticket_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    ticket = engine.confirm_fee(db, current, ticket_id, body.accept, now, policy, body.expected_version)
    return TicketOut.model_validate(ticket)


@router.post("/tickets/{ticket_id}/withdraw", response_model=TicketOut)
def withdraw(
    body: Optional[VersionGuard] = None,
    ticket_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
):
    expected = body.expected_version if body else None
    return TicketOut.model_validate(engine.withdraw(db, current, ticket_id, now, expected))
