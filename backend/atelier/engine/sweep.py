# backend/atelier/engine/sweep.py
"""
Periodic, idempotent sweep.

1. persist `expired` on proposals past their response window
2. move open tickets with a lapsed counter window to awaitingReview
3. auto-accept uploads whose review window lapsed (unless disputed)
4. mark contracts still active after their grace period `notCompleted`,
   holding those with a pending dispute or an upload awaiting review

Each item commits on its own, so a concurrent command on one contract
only defers that item to the next run.
"""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..models import Upload
from . import contracts, finance, proposals, tickets
from .errors import StaleWriteError
from .policy import EnginePolicy
from .uow import atomic, touch

logger = get_logger(__name__)


@dataclass
class SweepReport:
    proposals_expired: int = 0
    tickets_lapsed: int = 0
    uploads_auto_accepted: int = 0
    contracts_not_completed: int = 0
    contracts_held: int = 0
    deferred: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def _lapsed_reviews(db: Session, now: datetime) -> List[Upload]:
    return list(db.scalars(
        select(Upload)
        .where(Upload.status == "submitted", Upload.review_expires_at <= now)
        .order_by(Upload.id)
    ))


def _pending_review(contract) -> Optional[str]:
    """Work the client or an admin still has to rule on; grace expiry waits for it."""
    dispute = tickets.unresolved(contract, "resolution")
    if dispute is not None:
        return f"resolution ticket {dispute.id}"
    upload = next((u for u in contract.uploads if u.status == "submitted"), None)
    if upload is not None:
        return f"upload {upload.id}"
    return None


def run_sweep(db: Session, now: datetime, policy: EnginePolicy) -> SweepReport:
    report = SweepReport()

    for proposal_id in [p.id for p in proposals.lapsed_proposals(db, now)]:
        try:
            with atomic(db, "proposal", proposal_id):
                if not proposals.expire(proposals.get_proposal(db, proposal_id), now):
                    continue
            report.proposals_expired += 1
        except StaleWriteError:
            logger.warning("sweep: proposal %s changed concurrently, retrying next run", proposal_id)
            report.deferred += 1

    for ticket_id in [t.id for t in tickets.lapsed_open_tickets(db, now)]:
        try:
            with atomic(db, "ticket", ticket_id):
                ticket = tickets.get_ticket(db, ticket_id)
                if ticket.status != "open" or ticket.counter_expires_at > now:
                    continue
                tickets.lapse(ticket, now)
                contracts.record_event(ticket.contract, None, "ticket.lapsed", now, ticket_id=ticket.id)
            report.tickets_lapsed += 1
        except StaleWriteError:
            logger.warning("sweep: ticket %s changed concurrently, retrying next run", ticket_id)
            report.deferred += 1

    for upload_id in [u.id for u in _lapsed_reviews(db, now)]:
        try:
            with atomic(db, "upload", upload_id):
                upload = db.get(Upload, upload_id)
                contract = upload.contract
                if upload.status != "submitted" or contract.status != finance.ACTIVE:
                    continue
                if contracts.disputing_resolution(contract, contracts.upload_target_type(upload), upload.id):
                    continue
                contracts.accept_upload(db, contract, upload, upload.review_expires_at)
                touch(contract, now)
                contracts.record_event(contract, None, "upload.autoAccepted", now, upload_id=upload.id)
            report.uploads_auto_accepted += 1
        except StaleWriteError:
            logger.warning("sweep: upload %s changed concurrently, retrying next run", upload_id)
            report.deferred += 1

    for contract_id in [c.id for c in contracts.active_contracts_past_grace(db, now)]:
        try:
            with atomic(db, "contract", contract_id):
                contract = contracts.get_contract(db, contract_id)
                if contract.status != finance.ACTIVE or not now > contract.grace_ends_at:
                    continue
                pending = _pending_review(contract)
                if pending is not None:
                    logger.info("sweep: contract %s past grace but %s is pending, holding", contract_id, pending)
                    report.contracts_held += 1
                    continue
                finance.terminate(db, contract, "notCompleted", now)
                touch(contract, now)
                contracts.record_event(contract, None, "contract.notCompleted", now)
            report.contracts_not_completed += 1
        except StaleWriteError:
            logger.warning("sweep: contract %s changed concurrently, retrying next run", contract_id)
            report.deferred += 1

    logger.info("sweep at %s: %s", now.isoformat(), report.as_dict())
    return report
