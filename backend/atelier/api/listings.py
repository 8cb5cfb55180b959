# backend/atelier/api/listings.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, Field, constr
from sqlalchemy.orm import Session

from ..core.config import settings
from ..engine.pricing import PriceBreakdown, compute_price
from ..engine.snapshot import ListingSnapshot, Selection, validate_snapshot
from ..engine.uow import atomic, load
from ..models import Listing
from .deps import get_db, get_current_user, CurrentUser

router = APIRouter(prefix="/listings", tags=["listings"])


# ---------- Pydantic schemas ----------
class ListingCreate(BaseModel):
    title: constr(strip_whitespace=True, min_length=1, max_length=255)
    is_active: bool = True
    snapshot: ListingSnapshot


class ListingOut(BaseModel):
    id: int
    artist_id: int
    title: str
    is_active: bool
    snapshot: ListingSnapshot
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PricePreviewIn(BaseModel):
    selection: Selection = Field(default_factory=Selection)


# ---------- Endpoints ----------
@router.post("", response_model=ListingOut, status_code=status.HTTP_201_CREATED)
def create_listing(
    body: ListingCreate,
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    snapshot = body.snapshot
    # fields the artist left out fall back to the deployment defaults
    if "grace_days" not in snapshot.model_fields_set:
        snapshot.grace_days = settings.DEFAULT_GRACE_DAYS
    if "late_penalty_percent" not in snapshot.model_fields_set:
        snapshot.late_penalty_percent = settings.DEFAULT_LATE_PENALTY_PERCENT
    snapshot = validate_snapshot(snapshot)
    with atomic(db, "listing"):
        listing = Listing(
            artist_id=current.id,
            title=body.title,
            is_active=body.is_active,
            snapshot=snapshot.model_dump(mode="json"),
        )
        db.add(listing)
        db.flush()
    db.refresh(listing)
    return ListingOut.model_validate(listing)


@router.get("/{listing_id}", response_model=ListingOut)
def get_listing(
    listing_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    return ListingOut.model_validate(load(db, Listing, listing_id, "listing"))


@router.post("/{listing_id}/price-preview", response_model=PriceBreakdown)
def price_preview(
    body: PricePreviewIn,
    listing_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    """Same computation the proposal commit uses; nothing is stored."""
    listing = load(db, Listing, listing_id, "listing")
    snapshot = validate_snapshot(ListingSnapshot.model_validate(listing.snapshot))
    return compute_price(snapshot, body.selection)
