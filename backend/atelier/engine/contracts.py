# backend/atelier/engine/contracts.py
"""
Contract lifecycle: creation from a paid proposal, deliveries (uploads),
client review, milestone advancement and claims.

Every public command takes the actor, `now` and the EnginePolicy as
arguments and runs inside one `atomic()` unit. Commands that change a
contract touch its row so that concurrent commands on the same contract
serialize on its version counter.
"""
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..models import Contract, ContractEvent, ContractTerms, Milestone, Proposal, Ticket, Upload
from . import finance
from .errors import AuthorizationError, ConsistencyViolation, EntityNotFound, IllegalTransition, ValidationError
from .policy import EnginePolicy
from .pricing import PriceBreakdown
from .snapshot import ListingSnapshot, validate_snapshot
from .uow import atomic, check_version, load, touch

logger = get_logger(__name__)

UPLOAD_KINDS = ("progress", "final", "milestone", "revision")
UNRESOLVED = ("open", "awaitingReview")


# ---------------------------
# Helpers
# ---------------------------
def party_of(contract: Contract, actor) -> str:
    if actor.id == contract.client_id:
        return "client"
    if actor.id == contract.artist_id:
        return "artist"
    raise AuthorizationError(
        f"user {actor.id} is not a party to contract {contract.id}",
        {"contract_id": contract.id, "user_id": actor.id},
    )


def require_party(contract: Contract, actor, role: str, action: str) -> None:
    if party_of(contract, actor) != role:
        raise AuthorizationError(f"only the {role} may {action}", {"contract_id": contract.id})


def require_active(contract: Contract, action: str) -> None:
    if contract.status != finance.ACTIVE:
        raise IllegalTransition(contract.status, action)


def current_snapshot(contract: Contract) -> ListingSnapshot:
    return ListingSnapshot.model_validate(contract.latest_terms.snapshot)


def current_milestone(contract: Contract) -> Optional[Milestone]:
    return next((m for m in contract.milestones if m.status != "accepted"), None)


def record_event(contract: Contract, actor_id: Optional[int], kind: str, now: datetime, **payload) -> None:
    contract.events.append(ContractEvent(actor_id=actor_id, kind=kind, payload=payload or None, created_at=now))


def disputing_resolution(contract: Contract, target_type: str, target_id: int) -> Optional[Ticket]:
    return next(
        (
            t for t in contract.tickets
            if t.kind == "resolution" and t.status in UNRESOLVED
            and t.target_type == target_type and t.target_id == target_id
        ),
        None,
    )


def upload_target_type(upload: Upload) -> str:
    return {
        "final": "finalUpload",
        "milestone": "progressMilestoneUpload",
        "revision": "revisionUpload",
    }.get(upload.kind, upload.kind)


def get_contract(db: Session, contract_id: int) -> Contract:
    return load(db, Contract, contract_id, "contract")


def read_contract(db: Session, actor, contract_id: int) -> Contract:
    contract = get_contract(db, contract_id)
    if actor.role_name != "admin":
        party_of(contract, actor)
    return contract


# ---------------------------
# Creation
# ---------------------------
def open_contract(db: Session, proposal: Proposal, now: datetime) -> Contract:
    """Build the contract for a just-paid proposal. Caller owns the transaction."""
    snapshot = validate_snapshot(ListingSnapshot.model_validate(proposal.snapshot))
    breakdown = PriceBreakdown.model_validate(proposal.breakdown)
    if breakdown.recomputed_total() != breakdown.total or breakdown.total != proposal.total:
        logger.error("proposal %s breakdown does not add up to its total", proposal.id)
        raise ConsistencyViolation(
            "proposal breakdown does not add up to its total",
            {"proposal_id": proposal.id, "total": proposal.total, "recomputed": breakdown.recomputed_total()},
        )

    contract = Contract(
        proposal_id=proposal.id,
        listing_id=proposal.listing_id,
        client_id=proposal.client_id,
        artist_id=proposal.artist_id,
        flow=snapshot.flow,
        currency=snapshot.currency,
        base=breakdown.base,
        option_fees=breakdown.option_groups,
        addons=breakdown.addons,
        rush_fee=breakdown.rush,
        discount=breakdown.discount + breakdown.artist_discount,
        surcharge=breakdown.surcharge,
        runtime_fees=0,
        deadline_at=proposal.deadline_at,
        grace_ends_at=proposal.deadline_at + timedelta(days=snapshot.grace_days),
        status=finance.ACTIVE,
        work_percentage=0,
        revisions_used=0,
        created_at=now,
        updated_at=now,
    )
    finance.recompute_total(contract)

    contract.terms.append(ContractTerms(
        version_no=1,
        snapshot=proposal.snapshot,
        selection=proposal.selection,
        description=proposal.description,
        reference_images=list(proposal.reference_images or []),
        deadline_at=proposal.deadline_at,
        breakdown=proposal.breakdown,
        created_at=now,
    ))

    if snapshot.flow == "milestone":
        for i, tpl in enumerate(snapshot.milestones):
            contract.milestones.append(Milestone(
                idx=i,
                title=tpl.title,
                percent=tpl.percent,
                revision_policy=tpl.policy.model_dump() if tpl.policy else None,
                revisions_used=0,
                status="inProgress" if i == 0 else "pending",
                started_at=now if i == 0 else None,
            ))

    db.add(contract)
    db.flush()
    finance.hold_escrow(db, contract, now)
    record_event(contract, proposal.client_id, "contract.created", now, proposal_id=proposal.id, total=contract.total)
    logger.info("contract %s opened from proposal %s (total %s %s)", contract.id, proposal.id,
                contract.total, contract.currency)
    return contract


# ---------------------------
# Uploads
# ---------------------------
def post_upload(
    db: Session,
    actor,
    contract_id: int,
    kind: str,
    images: List[str],
    description: Optional[str],
    now: datetime,
    policy: EnginePolicy,
    revision_ticket_id: Optional[int] = None,
) -> Upload:
    with atomic(db, "contract", contract_id):
        contract = get_contract(db, contract_id)
        require_party(contract, actor, "artist", f"post {kind} uploads")
        require_active(contract, f"upload {kind}")
        if kind not in UPLOAD_KINDS:
            raise ValidationError("kind", f"must be one of {', '.join(UPLOAD_KINDS)}")
        if not images:
            raise ValidationError("images", "at least one image is required")

        upload = Upload(kind=kind, images=list(images), description=description, created_at=now)

        if kind == "progress":
            upload.status = "posted"
        elif kind == "final":
            if contract.flow != "standard":
                raise ValidationError("kind", "milestone contracts deliver through milestone uploads")
            if any(u.kind == "final" and u.status == "submitted" for u in contract.uploads):
                raise IllegalTransition("submitted", "upload final", "a final upload is already under review")
            _under_review(upload, now, policy)
        elif kind == "milestone":
            if contract.flow != "milestone":
                raise ValidationError("kind", "contract has no milestones")
            milestone = current_milestone(contract)
            if milestone is None:
                raise IllegalTransition("accepted", "upload milestone", "every milestone is already accepted")
            if any(u.kind == "milestone" and u.milestone_idx == milestone.idx and u.status == "submitted"
                   for u in contract.uploads):
                raise IllegalTransition("submitted", "upload milestone",
                                        f"milestone {milestone.idx} already has an upload under review")
            if milestone.status == "rejected":
                milestone.status = "inProgress"
            upload.milestone_idx = milestone.idx
            _under_review(upload, now, policy)
        else:
            ticket = _revision_ticket_for_upload(contract, revision_ticket_id)
            upload.revision_ticket_id = ticket.id
            upload.milestone_idx = ticket.milestone_idx
            _under_review(upload, now, policy)

        contract.uploads.append(upload)
        touch(contract, now)
        record_event(contract, actor.id, f"upload.{kind}", now, status=upload.status)
    logger.info("contract %s: %s upload %s %s", contract.id, kind, upload.id, upload.status)
    return upload


def _under_review(upload: Upload, now: datetime, policy: EnginePolicy) -> None:
    upload.status = "submitted"
    upload.review_expires_at = now + policy.upload_review


def _revision_ticket_for_upload(contract: Contract, ticket_id: Optional[int]) -> Ticket:
    if ticket_id is None:
        raise ValidationError("revision_ticket_id", "revision uploads must reference a granted revision ticket")
    ticket = next((t for t in contract.tickets if t.id == ticket_id and t.kind == "revision"), None)
    if ticket is None:
        raise ValidationError("revision_ticket_id", f"no revision ticket {ticket_id} on this contract")
    if ticket.status != "resolved" or ticket.outcome not in ("accepted", "forcedAccepted"):
        raise IllegalTransition(ticket.status, "upload revision", "revision ticket has not been granted")
    if ticket.fulfilled_at is not None:
        raise IllegalTransition("fulfilled", "upload revision", "revision ticket is already fulfilled")
    if any(u.revision_ticket_id == ticket.id and u.status == "submitted" for u in contract.uploads):
        raise IllegalTransition("submitted", "upload revision", "a revision upload is already under review")
    return ticket


def review_upload(
    db: Session,
    actor,
    contract_id: int,
    upload_id: int,
    accept: bool,
    now: datetime,
    policy: EnginePolicy,
    expected_version: Optional[int] = None,
) -> Upload:
    with atomic(db, "upload", upload_id):
        contract = get_contract(db, contract_id)
        upload = _upload_of(contract, upload_id)
        check_version(upload, expected_version, "upload")
        require_party(contract, actor, "client", "review uploads")
        require_active(contract, "review upload")
        if upload.status != "submitted":
            raise IllegalTransition(upload.status, "review upload")
        if disputing_resolution(contract, upload_target_type(upload), upload.id) is not None:
            raise IllegalTransition("disputed", "review upload", "upload is under dispute resolution")

        if accept:
            accept_upload(db, contract, upload, now)
        else:
            reject_upload(contract, upload, now)
        touch(contract, now)
        record_event(contract, actor.id, "upload.reviewed", now, upload_id=upload.id, status=upload.status)
    return upload


def _upload_of(contract: Contract, upload_id: int) -> Upload:
    upload = next((u for u in contract.uploads if u.id == upload_id), None)
    if upload is None:
        raise EntityNotFound("upload", upload_id)
    return upload


def accept_upload(db: Session, contract: Contract, upload: Upload, now: datetime, status: str = "accepted") -> None:
    """Accept (or force-accept) a reviewed upload and apply its effect on the contract."""
    upload.status = status
    upload.reviewed_at = now

    if upload.kind == "final":
        complete(db, contract, now)
    elif upload.kind == "milestone":
        milestone = contract.milestones[upload.milestone_idx]
        milestone.status = "accepted"
        milestone.accepted_at = now
        for other in contract.uploads:
            if (other is not upload and other.kind == "milestone"
                    and other.milestone_idx == milestone.idx and other.status == "submitted"):
                other.status = "rejected"
                other.reviewed_at = now
        contract.work_percentage = sum(m.percent for m in contract.milestones if m.status == "accepted")
        following = current_milestone(contract)
        if following is None:
            complete(db, contract, now)
        else:
            following.status = "inProgress"
            following.started_at = now
            logger.info("contract %s milestone %s accepted, milestone %s in progress",
                        contract.id, milestone.idx, following.idx)
    elif upload.kind == "revision":
        ticket = next(t for t in contract.tickets if t.id == upload.revision_ticket_id)
        ticket.fulfilled_at = now
        touch(ticket, now)
    logger.info("contract %s upload %s %s", contract.id, upload.id, status)


def reject_upload(contract: Contract, upload: Upload, now: datetime) -> None:
    upload.status = "rejected"
    upload.reviewed_at = now
    if upload.kind == "milestone":
        milestone = contract.milestones[upload.milestone_idx]
        milestone.status = "rejected"
        milestone.rejected_at = now
    logger.info("contract %s upload %s rejected", contract.id, upload.id)


def complete(db: Session, contract: Contract, now: datetime) -> None:
    status = "completedLate" if now > contract.deadline_at else "completed"
    finance.terminate(db, contract, status, now)


# ---------------------------
# Claims
# ---------------------------
def claim(db: Session, actor, contract_id: int, now: datetime) -> Contract:
    with atomic(db, "contract", contract_id):
        contract = get_contract(db, contract_id)
        party = party_of(contract, actor)
        amount = finance.record_claim(db, contract, party, now)
        touch(contract, now)
        record_event(contract, actor.id, "contract.claimed", now, party=party, amount=amount)
    return contract


def active_contracts_past_grace(db: Session, now: datetime) -> List[Contract]:
    return list(db.scalars(
        select(Contract).where(Contract.status == finance.ACTIVE, Contract.grace_ends_at < now)
    ))
