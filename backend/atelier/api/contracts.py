# backend/atelier/api/contracts.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..engine import contracts as engine
from ..engine.policy import EnginePolicy
from ..engine.pricing import PriceBreakdown
from ..engine.snapshot import Selection
from ..models import Contract
from .deps import get_db, get_current_user, get_now, get_policy, CurrentUser

router = APIRouter(prefix="/contracts", tags=["contracts"])


# ---------- Pydantic schemas ----------
class FinanceOut(BaseModel):
    currency: str
    base: int
    option_fees: int
    addons: int
    rush_fee: int
    discount: int
    surcharge: int
    runtime_fees: int
    total: int
    owed_to_client: Optional[int] = None
    owed_to_artist: Optional[int] = None
    settled_at: Optional[datetime] = None
    client_claimed_at: Optional[datetime] = None
    artist_claimed_at: Optional[datetime] = None


class MilestoneOut(BaseModel):
    idx: int
    title: str
    percent: int
    status: str
    revisions_used: int
    started_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UploadOut(BaseModel):
    id: int
    contract_id: int
    kind: str
    status: str
    images: List[str]
    description: Optional[str] = None
    milestone_idx: Optional[int] = None
    revision_ticket_id: Optional[int] = None
    review_expires_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
    version: int

    class Config:
        from_attributes = True


class ContractOut(BaseModel):
    id: int
    proposal_id: int
    listing_id: int
    client_id: int
    artist_id: int
    flow: str
    status: str
    work_percentage: int
    revisions_used: int
    deadline_at: datetime
    grace_ends_at: datetime
    completed_at: Optional[datetime] = None
    terms_version: int
    finance: FinanceOut
    milestones: List[MilestoneOut] = Field(default_factory=list)
    uploads: List[UploadOut] = Field(default_factory=list)
    version: int


class TermsOut(BaseModel):
    version_no: int
    selection: Selection
    description: Optional[str] = None
    reference_images: List[str] = Field(default_factory=list)
    deadline_at: datetime
    breakdown: PriceBreakdown
    source_ticket_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UploadIn(BaseModel):
    images: List[str] = Field(..., min_length=1)
    description: Optional[str] = None
    revision_ticket_id: Optional[int] = None


class ReviewIn(BaseModel):
    accept: bool
    expected_version: Optional[int] = None


def contract_out(c: Contract) -> ContractOut:
    return ContractOut(
        id=c.id,
        proposal_id=c.proposal_id,
        listing_id=c.listing_id,
        client_id=c.client_id,
        artist_id=c.artist_id,
        flow=c.flow,
        status=c.status,
        work_percentage=c.work_percentage,
        revisions_used=c.revisions_used,
        deadline_at=c.deadline_at,
        grace_ends_at=c.grace_ends_at,
        completed_at=c.completed_at,
        terms_version=c.latest_terms.version_no,
        finance=FinanceOut(
            currency=c.currency,
            base=c.base,
            option_fees=c.option_fees,
            addons=c.addons,
            rush_fee=c.rush_fee,
            discount=c.discount,
            surcharge=c.surcharge,
            runtime_fees=c.runtime_fees,
            total=c.total,
            owed_to_client=c.owed_to_client,
            owed_to_artist=c.owed_to_artist,
            settled_at=c.settled_at,
            client_claimed_at=c.client_claimed_at,
            artist_claimed_at=c.artist_claimed_at,
        ),
        milestones=[MilestoneOut.model_validate(m) for m in c.milestones],
        uploads=[UploadOut.model_validate(u) for u in c.uploads],
        version=c.version,
    )


# ---------- Endpoints ----------
@router.get("/{contract_id}", response_model=ContractOut)
def get_contract(
    contract_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    return contract_out(engine.read_contract(db, current, contract_id))


@router.get("/{contract_id}/terms", response_model=List[TermsOut])
def get_terms(
    contract_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    contract = engine.read_contract(db, current, contract_id)
    return [TermsOut.model_validate(t) for t in contract.terms]


@router.post("/{contract_id}/uploads/{kind}", response_model=UploadOut)
def post_upload(
    body: UploadIn,
    contract_id: int = Path(..., ge=1),
    kind: str = Path(..., pattern="^(progress|final|milestone|revision)$"),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    upload = engine.post_upload(
        db, current, contract_id, kind, body.images, body.description, now, policy,
        revision_ticket_id=body.revision_ticket_id,
    )
    return UploadOut.model_validate(upload)


@router.post("/{contract_id}/uploads/{upload_id}/review", response_model=UploadOut)
def review_upload(
    body: ReviewIn,
    contract_id: int = Path(..., ge=1),
    upload_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
    policy: EnginePolicy = Depends(get_policy),
):
    upload = engine.review_upload(
        db, current, contract_id, upload_id, body.accept, now, policy, expected_version=body.expected_version
    )
    return UploadOut.model_validate(upload)


@router.post("/{contract_id}/claim", response_model=ContractOut)
def claim(
    contract_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    now: datetime = Depends(get_now),
):
    return contract_out(engine.claim(db, current, contract_id, now))
