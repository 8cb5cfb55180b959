# backend/atelier/engine/tickets.py
"""
Per-contract tickets: cancellation, revision and change requests.

    open --counterparty responds / window lapses--> awaitingReview
    awaitingReview --accepted--> resolved
    awaitingReview --submitter withdraws--> cancelled
    awaitingReview --escalated--> (decided by a resolution ticket)

A counterparty acceptance resolves the ticket and applies its consequence
right away. A rejection leaves it in awaitingReview so the submitter can
escalate or withdraw it. Resolution tickets live in resolution.py but share
this table, the blocking rules and the counter-window sweep.
"""
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..models import Contract, ContractTerms, Ticket
from . import contracts, finance
from .contracts import current_snapshot, party_of, record_event, require_active
from .errors import AuthorizationError, IllegalTransition, ValidationError
from .policy import EnginePolicy
from .pricing import PriceBreakdown, compute_price
from .snapshot import Adjustment, RevisionPolicy, Selection, SelectionItem, SubjectSelection
from .uow import atomic, check_version, load, touch

logger = get_logger(__name__)

TICKET_KINDS = ("cancel", "revision", "change")
UNRESOLVED = ("open", "awaitingReview")


# =========================
# Change request DTO (one tagged entry per included aspect)
# =========================
class DeadlineChange(BaseModel):
    aspect: Literal["deadline"] = "deadline"
    deadline_at: datetime


class DescriptionChange(BaseModel):
    aspect: Literal["description"] = "description"
    description: str


class GeneralOptionsChange(BaseModel):
    aspect: Literal["generalOptions"] = "generalOptions"
    items: List[SelectionItem] = Field(default_factory=list)


class SubjectOptionsChange(BaseModel):
    aspect: Literal["subjectOptions"] = "subjectOptions"
    subjects: List[SubjectSelection] = Field(default_factory=list)


class ReferenceImagesChange(BaseModel):
    aspect: Literal["referenceImages"] = "referenceImages"
    images: List[str] = Field(default_factory=list)


AspectChange = Annotated[
    Union[DeadlineChange, DescriptionChange, GeneralOptionsChange, SubjectOptionsChange, ReferenceImagesChange],
    Field(discriminator="aspect"),
]


class ChangeRequest(BaseModel):
    aspects: List[AspectChange] = Field(default_factory=list)


# ---------------------------
# Helpers
# ---------------------------
def get_ticket(db: Session, ticket_id: int) -> Ticket:
    return load(db, Ticket, ticket_id, "ticket")


def read_ticket(db: Session, actor, ticket_id: int) -> Ticket:
    ticket = get_ticket(db, ticket_id)
    if actor.role_name != "admin":
        party_of(ticket.contract, actor)
    return ticket


def _other(role: str) -> str:
    return "artist" if role == "client" else "client"


def unresolved(contract: Contract, kind: str) -> Optional[Ticket]:
    return next((t for t in contract.tickets if t.kind == kind and t.status in UNRESOLVED), None)


def guard_new_ticket(contract: Contract, kind: str) -> None:
    """Contract must be active; at most one pending dispute, cancellation and change at a time."""
    attempted = f"open {kind} ticket"
    require_active(contract, attempted)
    dispute = unresolved(contract, "resolution")
    if dispute is not None:
        raise IllegalTransition("disputed", attempted, f"resolution ticket {dispute.id} is still pending")
    if kind in ("cancel", "change"):
        pending = unresolved(contract, kind)
        if pending is not None:
            raise IllegalTransition(pending.status, attempted, f"{kind} ticket {pending.id} is still pending")


def _require_evidence_text(description: Optional[str]) -> str:
    text = (description or "").strip()
    if not text:
        raise ValidationError("description", "a description is required")
    return text


def new_ticket(contract: Contract, actor, kind: str, description: str, evidence: List[str],
                now: datetime, window) -> Ticket:
    role = party_of(contract, actor)
    ticket = Ticket(
        kind=kind,
        submitted_by_id=actor.id,
        submitted_by_role=role,
        counterparty_role=_other(role),
        description=description,
        evidence=list(evidence or []),
        counter_evidence=[],
        counter_expires_at=now + window,
        status="open",
        runtime_fee=0,
        created_at=now,
        updated_at=now,
    )
    contract.tickets.append(ticket)
    return ticket


def close_ticket(ticket: Ticket, outcome: str, now: datetime) -> None:
    ticket.status = "resolved"
    ticket.outcome = outcome
    touch(ticket, now)
    logger.info("ticket %s (%s) resolved: %s", ticket.id, ticket.kind, outcome)


# =========================
# Opening
# =========================
def open_cancel(db: Session, actor, contract_id: int, description: str, evidence: List[str],
                work_percentage: Optional[int], now: datetime, policy: EnginePolicy) -> Ticket:
    with atomic(db, "contract", contract_id):
        contract = contracts.get_contract(db, contract_id)
        party_of(contract, actor)
        guard_new_ticket(contract, "cancel")
        text = _require_evidence_text(description)

        if contract.flow == "milestone":
            work = contract.work_percentage
        elif work_percentage is None:
            work = contract.work_percentage
        elif 0 <= work_percentage <= 100:
            work = work_percentage
        else:
            raise ValidationError("work_percentage", "must be between 0 and 100")

        ticket = new_ticket(contract, actor, "cancel", text, evidence, now, policy.ticket_response)
        ticket.work_percentage = work
        touch(contract, now)
        db.flush()
        record_event(contract, actor.id, "ticket.opened", now, ticket_id=ticket.id, ticket_kind="cancel")
        logger.info("contract %s: cancel ticket %s opened by %s", contract.id, ticket.id, ticket.submitted_by_role)
    return ticket


def _revision_scope(contract: Contract, milestone_idx: Optional[int]) -> Tuple[RevisionPolicy, object, Optional[int]]:
    """(policy, counter holder, milestone idx) for a new revision request."""
    rules = current_snapshot(contract).revisions
    if rules.type == "none":
        raise ValidationError("revision", "this commission does not include revisions")

    if rules.type == "milestone":
        if milestone_idx is None:
            milestone = contracts.current_milestone(contract) or contract.milestones[-1]
        elif 0 <= milestone_idx < len(contract.milestones):
            milestone = contract.milestones[milestone_idx]
        else:
            raise ValidationError("milestone_idx", f"no milestone {milestone_idx}")
        raw = milestone.revision_policy
        revision_policy = RevisionPolicy.model_validate(raw) if raw else rules.policy
        if revision_policy is None:
            raise ValidationError("revision", f"milestone {milestone.idx} does not include revisions")
        return revision_policy, milestone, milestone.idx

    return rules.policy, contract, None


def revision_fee(revision_policy: RevisionPolicy, used: int) -> int:
    if not revision_policy.limit or used < revision_policy.free:
        return 0
    if not revision_policy.extra_allowed:
        raise ValidationError("revision", "revision limit reached")
    return revision_policy.fee


def open_revision(db: Session, actor, contract_id: int, description: str, evidence: List[str],
                  milestone_idx: Optional[int], now: datetime, policy: EnginePolicy) -> Ticket:
    with atomic(db, "contract", contract_id):
        contract = contracts.get_contract(db, contract_id)
        contracts.require_party(contract, actor, "client", "request revisions")
        guard_new_ticket(contract, "revision")
        text = _require_evidence_text(description)

        revision_policy, holder, idx = _revision_scope(contract, milestone_idx)
        fee = revision_fee(revision_policy, holder.revisions_used)
        holder.revisions_used += 1

        ticket = new_ticket(contract, actor, "revision", text, evidence, now, policy.ticket_response)
        ticket.milestone_idx = idx
        ticket.fee = fee
        touch(contract, now)
        db.flush()
        record_event(contract, actor.id, "ticket.opened", now, ticket_id=ticket.id, ticket_kind="revision",
                     fee=fee)
        logger.info("contract %s: revision ticket %s opened (fee %s)", contract.id, ticket.id, fee)
    return ticket


def _release_revision(contract: Contract, ticket: Ticket) -> None:
    holder = contract if ticket.milestone_idx is None else contract.milestones[ticket.milestone_idx]
    holder.revisions_used = max(0, holder.revisions_used - 1)


def _changed_terms(contract: Contract, change: ChangeRequest, policy: EnginePolicy):
    """Validate a change request against the latest terms; returns the would-be new terms and breakdown."""
    terms = contract.latest_terms
    snapshot = current_snapshot(contract)
    if not snapshot.allow_contract_change:
        raise ValidationError("change", "this commission does not allow contract changes")
    if not change.aspects:
        raise ValidationError("aspects", "select at least one aspect to change")

    seen = set()
    for entry in change.aspects:
        if entry.aspect in seen:
            raise ValidationError("aspects", f"aspect '{entry.aspect}' included twice")
        seen.add(entry.aspect)
        if entry.aspect not in snapshot.changeable:
            raise ValidationError(f"aspects.{entry.aspect}", "this aspect cannot be changed on this commission")

    selection = Selection.model_validate(terms.selection)
    description = terms.description
    images = list(terms.reference_images or [])
    deadline_at = terms.deadline_at

    for entry in change.aspects:
        if isinstance(entry, DeadlineChange):
            earliest = contract.deadline_at + policy.change_deadline_min_extension
            new_deadline = entry.deadline_at
            if new_deadline.tzinfo is not None:
                new_deadline = new_deadline.astimezone(timezone.utc).replace(tzinfo=None)
            if new_deadline < earliest:
                raise ValidationError("aspects.deadline", f"new deadline must be on or after {earliest.isoformat()}")
            deadline_at = new_deadline
        elif isinstance(entry, DescriptionChange):
            if not entry.description.strip():
                raise ValidationError("aspects.description", "description cannot be empty")
            description = entry.description.strip()
        elif isinstance(entry, GeneralOptionsChange):
            selection.general = list(entry.items)
        elif isinstance(entry, SubjectOptionsChange):
            selection.subjects = list(entry.subjects)
        elif isinstance(entry, ReferenceImagesChange):
            if len(entry.images) > policy.max_reference_images:
                raise ValidationError("aspects.referenceImages",
                                      f"at most {policy.max_reference_images} images allowed")
            images = list(entry.images)

    previous = PriceBreakdown.model_validate(terms.breakdown)
    breakdown = compute_price(
        snapshot, selection, Adjustment(surcharge=previous.surcharge, discount=previous.artist_discount)
    )
    return selection, description, images, deadline_at, breakdown, previous


def open_change(db: Session, actor, contract_id: int, change: ChangeRequest, description: Optional[str],
                evidence: List[str], now: datetime, policy: EnginePolicy) -> Ticket:
    with atomic(db, "contract", contract_id):
        contract = contracts.get_contract(db, contract_id)
        contracts.require_party(contract, actor, "client", "request contract changes")
        guard_new_ticket(contract, "change")
        *_, breakdown, previous = _changed_terms(contract, change, policy)

        text = (description or "").strip() or ", ".join(a.aspect for a in change.aspects)
        ticket = new_ticket(contract, actor, "change", text, evidence, now, policy.ticket_response)
        ticket.change_request = change.model_dump(mode="json")
        ticket.price_delta = breakdown.total - previous.total
        touch(contract, now)
        db.flush()
        record_event(contract, actor.id, "ticket.opened", now, ticket_id=ticket.id, ticket_kind="change",
                     aspects=[a.aspect for a in change.aspects])
        logger.info("contract %s: change ticket %s opened (%s)", contract.id, ticket.id,
                    ", ".join(a.aspect for a in change.aspects))
    return ticket


# =========================
# Consequences
# =========================
def apply_cancel(db: Session, contract: Contract, ticket: Ticket, outcome: str, now: datetime) -> None:
    if contract.flow != "milestone" and ticket.work_percentage is not None:
        contract.work_percentage = ticket.work_percentage
    status = "cancelledClient" if ticket.submitted_by_role == "client" else "cancelledArtist"
    if now > contract.deadline_at:
        status += "Late"
    close_ticket(ticket, outcome, now)
    finance.terminate(db, contract, status, now)


def apply_revision(db: Session, contract: Contract, ticket: Ticket, outcome: str, now: datetime) -> None:
    close_ticket(ticket, outcome, now)
    ticket.runtime_fee = ticket.fee or 0
    finance.apply_runtime_fees(db, contract, ticket, now)


def deny_revision(contract: Contract, ticket: Ticket, now: datetime) -> None:
    _release_revision(contract, ticket)
    close_ticket(ticket, "denied", now)


def apply_change(db: Session, contract: Contract, ticket: Ticket, fee: int, outcome: str, now: datetime,
                 policy: EnginePolicy, waive_delta: bool = False) -> ContractTerms:
    """Append the next terms version and fold the price delta plus fee into runtime fees."""
    change = ChangeRequest.model_validate(ticket.change_request)
    selection, description, images, deadline_at, breakdown, previous = _changed_terms(contract, change, policy)

    delta = 0 if waive_delta else breakdown.total - previous.total
    terms = ContractTerms(
        version_no=contract.latest_terms.version_no + 1,
        snapshot=contract.latest_terms.snapshot,
        selection=selection.model_dump(mode="json"),
        description=description,
        reference_images=images,
        deadline_at=deadline_at,
        breakdown=breakdown.model_dump(mode="json"),
        source_ticket_id=ticket.id,
        created_at=now,
    )
    contract.terms.append(terms)

    if deadline_at != contract.deadline_at:
        grace = contract.grace_ends_at - contract.deadline_at
        contract.deadline_at = deadline_at
        contract.grace_ends_at = deadline_at + grace

    ticket.price_delta = delta
    ticket.runtime_fee = delta + (fee or 0)
    ticket.applied_terms_version = terms.version_no
    close_ticket(ticket, outcome, now)
    finance.apply_runtime_fees(db, contract, ticket, now)
    logger.info("contract %s terms v%s from change ticket %s (delta %s, fee %s)",
                contract.id, terms.version_no, ticket.id, delta, fee or 0)
    return terms


# =========================
# Counterparty / submitter commands
# =========================
def _require_not_escalated(ticket: Ticket, attempted: str) -> None:
    if ticket.escalated_to_id is not None:
        raise IllegalTransition("escalated", attempted, f"ticket {ticket.id} is under resolution {ticket.escalated_to_id}")


def respond(db: Session, actor, ticket_id: int, accept: bool, counter_description: Optional[str],
            counter_evidence: List[str], fee: Optional[int], now: datetime, policy: EnginePolicy,
            expected_version: Optional[int] = None) -> Ticket:
    with atomic(db, "ticket", ticket_id):
        ticket = get_ticket(db, ticket_id)
        check_version(ticket, expected_version, "ticket")
        contract = ticket.contract
        if ticket.kind not in TICKET_KINDS:
            raise ValidationError("ticket_id", "resolution tickets take counterproof, not responses")
        if party_of(contract, actor) != ticket.counterparty_role:
            raise AuthorizationError(f"only the {ticket.counterparty_role} may respond to ticket {ticket.id}")
        attempted = "accept" if accept else "reject"
        if ticket.status != "open":
            raise IllegalTransition(ticket.status, attempted)
        if now >= ticket.counter_expires_at:
            raise IllegalTransition("lapsed", attempted, f"response window of ticket {ticket.id} has closed")
        if fee and (ticket.kind != "change" or not accept):
            raise ValidationError("fee", "a fee can only be proposed when accepting a change request")
        if fee is not None and fee < 0:
            raise ValidationError("fee", "fee cannot be negative")

        ticket.counter_description = counter_description
        ticket.counter_evidence = list(counter_evidence or [])
        ticket.countered_at = now
        ticket.status = "awaitingReview"

        if not accept:
            ticket.outcome = "rejected"
            touch(ticket, now)
            logger.info("ticket %s (%s) rejected by %s", ticket.id, ticket.kind, ticket.counterparty_role)
        else:
            require_active(contract, f"accept {ticket.kind} ticket")
            if ticket.kind == "cancel":
                apply_cancel(db, contract, ticket, "accepted", now)
            elif ticket.kind == "revision":
                apply_revision(db, contract, ticket, "accepted", now)
            elif fee:
                ticket.outcome = "feeProposed"
                ticket.proposed_fee = fee
                touch(ticket, now)
                logger.info("change ticket %s: artist proposed fee %s", ticket.id, fee)
            else:
                apply_change(db, contract, ticket, 0, "accepted", now, policy)

        touch(contract, now)
        record_event(contract, actor.id, "ticket.responded", now, ticket_id=ticket.id, accept=accept,
                     outcome=ticket.outcome)
    return ticket


def confirm_fee(db: Session, actor, ticket_id: int, accept: bool, now: datetime, policy: EnginePolicy,
                expected_version: Optional[int] = None) -> Ticket:
    with atomic(db, "ticket", ticket_id):
        ticket = get_ticket(db, ticket_id)
        check_version(ticket, expected_version, "ticket")
        contract = ticket.contract
        if ticket.kind != "change" or actor.id != ticket.submitted_by_id:
            raise AuthorizationError(f"only the client who requested change ticket {ticket.id} may confirm its fee")
        attempted = "confirm fee" if accept else "decline fee"
        _require_not_escalated(ticket, attempted)
        if ticket.status != "awaitingReview" or ticket.outcome != "feeProposed":
            raise IllegalTransition(ticket.outcome or ticket.status, attempted)

        if accept:
            require_active(contract, attempted)
            apply_change(db, contract, ticket, ticket.proposed_fee, "accepted", now, policy)
        else:
            ticket.outcome = "feeRejected"
            touch(ticket, now)
        touch(contract, now)
        record_event(contract, actor.id, "ticket.fee", now, ticket_id=ticket.id, accept=accept)
    return ticket


def withdraw(db: Session, actor, ticket_id: int, now: datetime, expected_version: Optional[int] = None) -> Ticket:
    with atomic(db, "ticket", ticket_id):
        ticket = get_ticket(db, ticket_id)
        check_version(ticket, expected_version, "ticket")
        contract = ticket.contract
        if ticket.kind not in TICKET_KINDS:
            raise ValidationError("ticket_id", "resolution tickets are cancelled through the resolution endpoint")
        if actor.id != ticket.submitted_by_id:
            raise AuthorizationError(f"only the submitter may withdraw ticket {ticket.id}")
        _require_not_escalated(ticket, "withdraw")
        if ticket.status not in UNRESOLVED:
            raise IllegalTransition(ticket.status, "withdraw")

        ticket.status = "cancelled"
        ticket.outcome = "withdrawn"
        if ticket.kind == "revision":
            _release_revision(contract, ticket)
        touch(ticket, now)
        touch(contract, now)
        record_event(contract, actor.id, "ticket.withdrawn", now, ticket_id=ticket.id)
        logger.info("ticket %s (%s) withdrawn", ticket.id, ticket.kind)
    return ticket


# =========================
# Sweep
# =========================
def lapsed_open_tickets(db: Session, now: datetime) -> List[Ticket]:
    return list(db.scalars(
        select(Ticket).where(Ticket.status == "open", Ticket.counter_expires_at <= now)
    ))


def lapse(ticket: Ticket, now: datetime) -> None:
    """open -> awaitingReview with empty counter-evidence once the window has passed."""
    ticket.status = "awaitingReview"
    ticket.counter_evidence = []
    ticket.outcome = "noResponse"
    touch(ticket, now)
    logger.info("ticket %s (%s) counter window lapsed -> awaitingReview", ticket.id, ticket.kind)
