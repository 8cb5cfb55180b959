# backend/atelier/api/proposals.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..engine import proposals as engine
from ..engine.policy import EnginePolicy
from ..engine.pricing import PriceBreakdown
from ..engine.snapshot import Selection
from ..models import Proposal
from .contracts import ContractOut, contract_out
from .deps import get_db, get_current_user, get_now, get_policy, CurrentUser

router = APIRouter(prefix="/proposals", tags=["proposals"])


# ---------- Pydantic schemas ----------
class ProposalCreate(BaseModel):
    listing_id: int = Field(..., ge=1)
    selection: Selection = Field(default_factory=Selection)
    description: Optional[str] = None
    reference_images: List[str] = Field(default_factory=list)


class ProposalCancel(BaseModel):
    expected_version: Optional[int] = None


class ProposalOut(BaseModel):
    id: int
    listing_id: int
    client_id: int
    artist_id: int
    status: str
    selection: Selection
    description: Optional[str] = None
    reference_images: List[str] = Field(default_factory=list)
    breakdown: PriceBreakdown
    total: int
    surcharge: int
    artist_discount: int
    adjustment_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    deadline_at: datetime
    expires_at: datetime
    version: int


def proposal_out(p: Proposal, now: datetime) -> ProposalOut:
    """Status is the effective one: a lapsed proposal reads as expired before the sweep persists it."""
    return ProposalOut(
        id=p.id,
        listing_id=p.listing_id,
        client_id=p.client_id,
        artist_id=p.artist_id,
        status=engine.effective_status(p, now),
        selection=p.selection,
        description=p.description,
        reference_images=p.reference_images or [],
        breakdown=p.breakdown,
        total=p.total,
        surcharge=p.surcharge,
        artist_discount=p.artist_discount,
        adjustment_reason=p.adjustment_reason,
        rejection_reason=p.rejection_reason,
        deadline_at=p.deadline_at,
        expires_at=p.expires_at,
        version=p.version,
    )


# ---------- Endpoints ----------
@router.post("", response_model=ProposalOut, status_code=status.HTTP_201_CREATED)
def create_proposal(
    body: ProposalCreate,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    p = engine.create_proposal(
        db, current, body.listing_id, body.selection, body.description, body.reference_images, now, policy
    )
    return proposal_out(p, now)


@router.get("/{proposal_id}", response_model=ProposalOut)
def get_proposal(
    proposal_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
):
    return proposal_out(engine.read_proposal(db, current, proposal_id), now)


@router.patch("/{proposal_id}", response_model=ProposalOut)
def update_proposal(
    body: engine.ProposalUpdate,
    proposal_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    return proposal_out(engine.update_proposal(db, current, proposal_id, body, now, policy), now)


@router.post("/{proposal_id}/respond", response_model=ProposalOut)
def respond(
    body: engine.ProposalResponse,
    proposal_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    return proposal_out(engine.respond(db, current, proposal_id, body, now, policy), now)


@router.post("/{proposal_id}/cancel", response_model=ProposalOut)
def cancel(
    body: Optional[ProposalCancel] = None,
    proposal_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    expected = body.expected_version if body else None
    return proposal_out(engine.cancel(db, current, proposal_id, now, policy, expected), now)


@router.post("/{proposal_id}/pay", response_model=ContractOut)
def pay(
    proposal_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    return contract_out(engine.pay(db, current, proposal_id, now, policy))
