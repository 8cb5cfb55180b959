# backend/atelier/engine/proposals.py
"""
Proposal negotiation.

    pendingArtist --artist accept--> pendingClient --client accept--> accepted --pay--> paid
          |   ^                           |
          |   +------artist accept-- rejectedClient <--client reject--+
          +--artist reject--> rejectedArtist

The client may edit the request (selection, description, references) until
the artist answers. Any non-terminal proposal may be cancelled by the
client. Expiry is lazy:
a proposal past `expires_at` reads as `expired` and refuses commands; the
sweep persists the status.
"""
from datetime import datetime, timedelta
from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..models import Contract, Listing, Proposal
from . import contracts
from .errors import AuthorizationError, IllegalTransition, ValidationError
from .policy import EnginePolicy
from .pricing import compute_price
from .snapshot import Adjustment, ListingSnapshot, Selection, validate_snapshot
from .uow import atomic, check_version, load

logger = get_logger(__name__)

OPEN_STATUSES = ("pendingArtist", "pendingClient", "rejectedClient", "accepted")


class ProposalResponse(BaseModel):
    role: Literal["artist", "client"]
    accept: bool
    surcharge: Optional[int] = Field(None, ge=0)
    discount: Optional[int] = Field(None, ge=0)
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class ProposalUpdate(BaseModel):
    selection: Optional[Selection] = None
    description: Optional[str] = None
    reference_images: Optional[List[str]] = None
    expected_version: Optional[int] = None


def effective_status(proposal: Proposal, now: datetime) -> str:
    if proposal.status in OPEN_STATUSES and now >= proposal.expires_at:
        return "expired"
    return proposal.status


def _require(proposal: Proposal, now: datetime, allowed, attempted: str) -> str:
    status = effective_status(proposal, now)
    if status not in allowed:
        raise IllegalTransition(status, attempted)
    return status


def _move(proposal: Proposal, status: str, now: datetime, policy: EnginePolicy) -> None:
    previous = proposal.status
    proposal.status = status
    proposal.updated_at = now
    if status in OPEN_STATUSES:
        proposal.expires_at = now + policy.proposal_response
    logger.info("proposal %s %s -> %s", proposal.id, previous, status)


def get_proposal(db: Session, proposal_id: int) -> Proposal:
    return load(db, Proposal, proposal_id, "proposal")


def _require_viewer(proposal: Proposal, actor) -> None:
    if actor.id not in (proposal.client_id, proposal.artist_id) and actor.role_name != "admin":
        raise AuthorizationError(f"user {actor.id} is not a party to proposal {proposal.id}")


def read_proposal(db: Session, actor, proposal_id: int) -> Proposal:
    proposal = get_proposal(db, proposal_id)
    _require_viewer(proposal, actor)
    return proposal


# ---------------------------
# Commands
# ---------------------------
def create_proposal(
    db: Session,
    actor,
    listing_id: int,
    selection: Selection,
    description: Optional[str],
    reference_images: List[str],
    now: datetime,
    policy: EnginePolicy,
) -> Proposal:
    with atomic(db, "listing", listing_id):
        listing = load(db, Listing, listing_id, "listing")
        if listing.artist_id == actor.id:
            raise AuthorizationError("artists cannot commission their own listing", {"listing_id": listing.id})
        if not listing.is_active:
            raise ValidationError("listing_id", "listing is not accepting commissions")
        if len(reference_images) > policy.max_reference_images:
            raise ValidationError("reference_images", f"at most {policy.max_reference_images} images allowed")

        snapshot = validate_snapshot(ListingSnapshot.model_validate(listing.snapshot))
        breakdown = compute_price(snapshot, selection)

        proposal = Proposal(
            listing_id=listing.id,
            client_id=actor.id,
            artist_id=listing.artist_id,
            snapshot=snapshot.model_dump(mode="json"),
            selection=selection.model_dump(mode="json"),
            description=description,
            reference_images=list(reference_images),
            breakdown=breakdown.model_dump(mode="json"),
            total=breakdown.total,
            surcharge=0,
            artist_discount=0,
            deadline_at=now + timedelta(days=breakdown.deadline_days),
            status="pendingArtist",
            expires_at=now + policy.proposal_response,
            created_at=now,
            updated_at=now,
        )
        db.add(proposal)
        db.flush()
        logger.info("proposal %s created on listing %s by user %s (total %s)",
                    proposal.id, listing.id, actor.id, proposal.total)
    return proposal


def respond(
    db: Session,
    actor,
    proposal_id: int,
    command: ProposalResponse,
    now: datetime,
    policy: EnginePolicy,
) -> Proposal:
    with atomic(db, "proposal", proposal_id):
        proposal = get_proposal(db, proposal_id)
        check_version(proposal, command.expected_version, "proposal")
        party_id = proposal.artist_id if command.role == "artist" else proposal.client_id
        if actor.id != party_id:
            raise AuthorizationError(f"only the {command.role} of proposal {proposal.id} may respond as {command.role}")

        if command.role == "artist":
            _artist_response(proposal, command, now, policy)
        else:
            _client_response(proposal, command, now, policy)
    return proposal


def _artist_response(proposal: Proposal, command: ProposalResponse, now: datetime, policy: EnginePolicy) -> None:
    attempted = "artist accept" if command.accept else "artist reject"
    _require(proposal, now, ("pendingArtist", "rejectedClient"), attempted)

    if not command.accept:
        if not (command.reason or "").strip():
            raise ValidationError("reason", "a reason is required to reject a proposal")
        proposal.rejection_reason = command.reason.strip()
        _move(proposal, "rejectedArtist", now, policy)
        return

    adjustment = Adjustment(
        surcharge=command.surcharge or 0,
        discount=command.discount or 0,
        reason=command.reason,
    )
    breakdown = compute_price(
        ListingSnapshot.model_validate(proposal.snapshot),
        Selection.model_validate(proposal.selection),
        adjustment,
    )
    proposal.breakdown = breakdown.model_dump(mode="json")
    proposal.total = breakdown.total
    proposal.surcharge = adjustment.surcharge
    proposal.artist_discount = adjustment.discount
    proposal.adjustment_reason = adjustment.reason
    _move(proposal, "pendingClient", now, policy)


def _client_response(proposal: Proposal, command: ProposalResponse, now: datetime, policy: EnginePolicy) -> None:
    attempted = "client accept" if command.accept else "client reject"
    _require(proposal, now, ("pendingClient",), attempted)
    if command.accept:
        _move(proposal, "accepted", now, policy)
    else:
        proposal.rejection_reason = (command.reason or "").strip() or None
        _move(proposal, "rejectedClient", now, policy)


def update_proposal(
    db: Session,
    actor,
    proposal_id: int,
    command: ProposalUpdate,
    now: datetime,
    policy: EnginePolicy,
) -> Proposal:
    """
    Client edit while the artist has not answered yet. Omitted fields keep
    their value; the price is recomputed against the proposal's own snapshot
    and the response window restarts.
    """
    with atomic(db, "proposal", proposal_id):
        proposal = get_proposal(db, proposal_id)
        check_version(proposal, command.expected_version, "proposal")
        if actor.id != proposal.client_id:
            raise AuthorizationError("only the client may edit a proposal")
        _require(proposal, now, ("pendingArtist",), "edit")

        if command.reference_images is not None:
            if len(command.reference_images) > policy.max_reference_images:
                raise ValidationError("reference_images",
                                      f"at most {policy.max_reference_images} images allowed")
            proposal.reference_images = list(command.reference_images)
        if command.description is not None:
            proposal.description = command.description

        selection = command.selection or Selection.model_validate(proposal.selection)
        breakdown = compute_price(ListingSnapshot.model_validate(proposal.snapshot), selection)
        proposal.selection = selection.model_dump(mode="json")
        proposal.breakdown = breakdown.model_dump(mode="json")
        proposal.total = breakdown.total
        proposal.deadline_at = now + timedelta(days=breakdown.deadline_days)
        _move(proposal, "pendingArtist", now, policy)
        logger.info("proposal %s edited by client %s (total %s)", proposal.id, actor.id, proposal.total)
    return proposal


def cancel(db: Session, actor, proposal_id: int, now: datetime, policy: EnginePolicy,
           expected_version: Optional[int] = None) -> Proposal:
    with atomic(db, "proposal", proposal_id):
        proposal = get_proposal(db, proposal_id)
        check_version(proposal, expected_version, "proposal")
        if actor.id != proposal.client_id:
            raise AuthorizationError("only the client may cancel a proposal")
        _require(proposal, now, OPEN_STATUSES, "cancel")
        _move(proposal, "cancelled", now, policy)
    return proposal


def pay(db: Session, actor, proposal_id: int, now: datetime, policy: EnginePolicy) -> Contract:
    """accepted -> paid, opening the contract in the same transaction. Retrying returns the same contract."""
    with atomic(db, "proposal", proposal_id):
        proposal = get_proposal(db, proposal_id)
        if actor.id != proposal.client_id:
            raise AuthorizationError("only the client may pay for a proposal")

        if proposal.status == "paid":
            existing = db.scalars(select(Contract).where(Contract.proposal_id == proposal.id)).first()
            if existing is not None:
                return existing

        _require(proposal, now, ("accepted",), "pay")
        _move(proposal, "paid", now, policy)
        contract = contracts.open_contract(db, proposal, now)
    return contract


def lapsed_proposals(db: Session, now: datetime) -> List[Proposal]:
    return list(db.scalars(
        select(Proposal)
        .where(Proposal.status.in_(OPEN_STATUSES), Proposal.expires_at <= now)
        .order_by(Proposal.id)
    ))


def expire(proposal: Proposal, now: datetime) -> bool:
    """Persist `expired` on a lapsed proposal. Caller owns the transaction."""
    if proposal.status not in OPEN_STATUSES or proposal.expires_at > now:
        return False
    previous = proposal.status
    proposal.status = "expired"
    proposal.updated_at = now
    logger.info("proposal %s %s -> expired", proposal.id, previous)
    return True
