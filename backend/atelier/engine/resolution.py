# backend/atelier/engine/resolution.py
"""
Resolution arbitration: a party disputes a ticket or an upload, the other
party may submit counterproof, and an admin decides.

The decision is applied through CONSEQUENCES, keyed by (target_type,
decision). Each entry is a concrete mutation of the disputed ticket or
upload and, through them, the contract.
"""
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..models import Contract, Ticket, Upload
from . import contracts, tickets
from .contracts import party_of, record_event, require_active
from .errors import AuthorizationError, IllegalTransition, InvalidDecision, ValidationError
from .policy import EnginePolicy
from .uow import atomic, check_version, touch

logger = get_logger(__name__)

DECISIONS = ("favorClient", "favorArtist")

TICKET_TARGETS = {
    "cancelTicket": "cancel",
    "revisionTicket": "revision",
    "changeTicket": "change",
}
UPLOAD_TARGETS = {
    "finalUpload": "final",
    "progressMilestoneUpload": "milestone",
    "revisionUpload": "revision",
}
TARGET_TYPES = tuple(TICKET_TARGETS) + tuple(UPLOAD_TARGETS)


# ---------------------------
# Target lookup
# ---------------------------
def _target(contract: Contract, target_type: str, target_id: int):
    if target_type in TICKET_TARGETS:
        kind = TICKET_TARGETS[target_type]
        target = next((t for t in contract.tickets if t.id == target_id and t.kind == kind), None)
    elif target_type in UPLOAD_TARGETS:
        kind = UPLOAD_TARGETS[target_type]
        target = next((u for u in contract.uploads if u.id == target_id and u.kind == kind), None)
    else:
        raise ValidationError("target_type", f"must be one of {', '.join(TARGET_TYPES)}")
    if target is None:
        raise ValidationError("target_id", f"no {target_type} {target_id} on contract {contract.id}")
    return target


def _require_contestable(target, target_type: str) -> None:
    if target_type in TICKET_TARGETS:
        if target.escalated_to_id is not None:
            raise IllegalTransition("escalated", "escalate", f"ticket {target.id} is already under resolution")
        if target.status != "awaitingReview":
            raise IllegalTransition(target.status, "escalate")
    elif target.status not in ("submitted", "rejected"):
        raise IllegalTransition(target.status, "dispute upload")


# ---------------------------
# Commands
# ---------------------------
def open_resolution(db: Session, actor, contract_id: int, target_type: str, target_id: int,
                    description: str, evidence: List[str], now: datetime, policy: EnginePolicy) -> Ticket:
    with atomic(db, "contract", contract_id):
        contract = contracts.get_contract(db, contract_id)
        party_of(contract, actor)
        require_active(contract, "open resolution ticket")
        if len((description or "").strip()) < policy.resolution_description_min_length:
            raise ValidationError(
                "description", f"must be at least {policy.resolution_description_min_length} characters"
            )
        if not evidence:
            raise ValidationError("evidence", "at least one piece of evidence is required")

        pending = tickets.unresolved(contract, "resolution")
        if pending is not None:
            raise IllegalTransition("disputed", "open resolution ticket",
                                    f"resolution ticket {pending.id} is still pending")

        target = _target(contract, target_type, target_id)
        _require_contestable(target, target_type)

        ticket = tickets.new_ticket(contract, actor, "resolution", description.strip(), evidence,
                                    now, policy.resolution_counter)
        ticket.target_type = target_type
        ticket.target_id = target_id
        db.flush()

        if target_type in TICKET_TARGETS:
            target.escalated_to_id = ticket.id
            touch(target, now)
        touch(contract, now)
        record_event(contract, actor.id, "resolution.opened", now, ticket_id=ticket.id,
                     target_type=target_type, target_id=target_id)
        logger.info("contract %s: resolution %s opened on %s %s by %s", contract.id, ticket.id,
                    target_type, target_id, ticket.submitted_by_role)
    return ticket


def _resolution_ticket(db: Session, ticket_id: int) -> Ticket:
    ticket = tickets.get_ticket(db, ticket_id)
    if ticket.kind != "resolution":
        raise ValidationError("ticket_id", f"ticket {ticket_id} is not a resolution ticket")
    return ticket


def submit_counter(db: Session, actor, ticket_id: int, description: Optional[str], evidence: List[str],
                   now: datetime, expected_version: Optional[int] = None) -> Ticket:
    with atomic(db, "ticket", ticket_id):
        ticket = _resolution_ticket(db, ticket_id)
        check_version(ticket, expected_version, "ticket")
        if party_of(ticket.contract, actor) != ticket.counterparty_role:
            raise AuthorizationError(f"only the {ticket.counterparty_role} may submit counterproof")
        if ticket.status != "open":
            raise IllegalTransition(ticket.status, "submit counterproof")
        if now >= ticket.counter_expires_at:
            raise IllegalTransition("lapsed", "submit counterproof", "counterproof window has closed")

        ticket.counter_description = description
        ticket.counter_evidence = list(evidence or [])
        ticket.countered_at = now
        ticket.status = "awaitingReview"
        touch(ticket, now)
        record_event(ticket.contract, actor.id, "resolution.counterproof", now, ticket_id=ticket.id)
        logger.info("resolution %s counterproof submitted -> awaitingReview", ticket.id)
    return ticket


def cancel_resolution(db: Session, actor, ticket_id: int, now: datetime,
                      expected_version: Optional[int] = None) -> Ticket:
    with atomic(db, "ticket", ticket_id):
        ticket = _resolution_ticket(db, ticket_id)
        check_version(ticket, expected_version, "ticket")
        if actor.id != ticket.submitted_by_id:
            raise AuthorizationError("only the submitter may cancel a resolution ticket")
        if ticket.status not in tickets.UNRESOLVED:
            raise IllegalTransition(ticket.status, "cancel resolution")

        contract = ticket.contract
        ticket.status = "cancelled"
        ticket.outcome = "withdrawn"
        touch(ticket, now)
        if ticket.target_type in TICKET_TARGETS:
            target = _target(contract, ticket.target_type, ticket.target_id)
            target.escalated_to_id = None
            touch(target, now)
        touch(contract, now)
        record_event(contract, actor.id, "resolution.cancelled", now, ticket_id=ticket.id)
        logger.info("resolution %s cancelled by submitter", ticket.id)
    return ticket


def resolve(db: Session, actor, ticket_id: int, decision: str, resolution_note: str, now: datetime,
            policy: EnginePolicy, expected_version: Optional[int] = None) -> Ticket:
    if actor.role_name != "admin":
        raise AuthorizationError("only administrators may resolve disputes")

    with atomic(db, "ticket", ticket_id):
        ticket = _resolution_ticket(db, ticket_id)
        check_version(ticket, expected_version, "ticket")
        if ticket.status != "awaitingReview":
            raise IllegalTransition(ticket.status, "resolve")
        if decision not in DECISIONS:
            raise InvalidDecision(decision)
        note = (resolution_note or "").strip()
        if len(note) < policy.resolution_note_min_length:
            raise ValidationError(
                "resolution_note", f"must be at least {policy.resolution_note_min_length} characters"
            )

        contract = ticket.contract
        require_active(contract, "apply resolution")
        target = _target(contract, ticket.target_type, ticket.target_id)
        CONSEQUENCES[(ticket.target_type, decision)](db, contract, target, now, policy)

        ticket.status = "resolved"
        ticket.decision = decision
        ticket.outcome = decision
        ticket.resolution_note = note
        ticket.resolved_by = actor.id
        ticket.resolved_at = now
        touch(ticket, now)
        touch(contract, now)
        record_event(contract, actor.id, "resolution.resolved", now, ticket_id=ticket.id, decision=decision)
        logger.info("resolution %s resolved %s on %s %s (contract %s now %s)", ticket.id, decision,
                    ticket.target_type, ticket.target_id, contract.id, contract.status)
    return ticket


def pending_for_admin(db: Session, actor, status: Optional[str] = None) -> List[Ticket]:
    if actor.role_name != "admin":
        raise AuthorizationError("only administrators may list disputes")
    stmt = select(Ticket).where(Ticket.kind == "resolution")
    if status:
        stmt = stmt.where(Ticket.status == status)
    return list(db.scalars(stmt.order_by(Ticket.created_at, Ticket.id)))


# ---------------------------
# Consequence table
# ---------------------------
def _cancel_accepted(db, contract: Contract, target: Ticket, now, policy) -> None:
    tickets.apply_cancel(db, contract, target, "forcedAccepted", now)


def _cancel_denied(db, contract: Contract, target: Ticket, now, policy) -> None:
    tickets.close_ticket(target, "denied", now)


def _revision_granted(db, contract: Contract, target: Ticket, now, policy) -> None:
    tickets.apply_revision(db, contract, target, "forcedAccepted", now)


def _revision_denied(db, contract: Contract, target: Ticket, now, policy) -> None:
    tickets.deny_revision(contract, target, now)


def _change_applied_without_fee(db, contract: Contract, target: Ticket, now, policy) -> None:
    tickets.apply_change(db, contract, target, 0, "forcedAccepted", now, policy, waive_delta=True)


def _change_artist_terms(db, contract: Contract, target: Ticket, now, policy) -> None:
    if target.outcome in ("feeProposed", "feeRejected"):
        tickets.apply_change(db, contract, target, target.proposed_fee, "feeApplied", now, policy)
    else:
        tickets.close_ticket(target, "denied", now)


def _upload_rejected(db, contract: Contract, target: Upload, now, policy) -> None:
    if target.status != "rejected":
        contracts.reject_upload(contract, target, now)
    elif target.kind == "milestone":
        contract.milestones[target.milestone_idx].status = "rejected"


def _upload_forced(db, contract: Contract, target: Upload, now, policy) -> None:
    if target.kind == "milestone" and contract.milestones[target.milestone_idx].status == "accepted":
        raise IllegalTransition("accepted", "force-accept upload", "milestone is already accepted")
    contracts.accept_upload(db, contract, target, now, status="forcedAccepted")


Consequence = Callable[[Session, Contract, object, datetime, EnginePolicy], None]

CONSEQUENCES: Dict[Tuple[str, str], Consequence] = {
    ("cancelTicket", "favorClient"): _cancel_accepted,
    ("cancelTicket", "favorArtist"): _cancel_denied,
    ("revisionTicket", "favorClient"): _revision_granted,
    ("revisionTicket", "favorArtist"): _revision_denied,
    ("changeTicket", "favorClient"): _change_applied_without_fee,
    ("changeTicket", "favorArtist"): _change_artist_terms,
    ("finalUpload", "favorClient"): _upload_rejected,
    ("finalUpload", "favorArtist"): _upload_forced,
    ("progressMilestoneUpload", "favorClient"): _upload_rejected,
    ("progressMilestoneUpload", "favorArtist"): _upload_forced,
    ("revisionUpload", "favorClient"): _upload_rejected,
    ("revisionUpload", "favorArtist"): _upload_forced,
}
