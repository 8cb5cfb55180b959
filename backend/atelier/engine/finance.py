# backend/atelier/engine/finance.py
"""
Contract money decisions: escrow hold, runtime fees, terminal settlement
and claims. Nothing here moves money; every decision becomes a ledger row
whose dedupe_key makes it land at most once.

Settlement (T = contract total, W = T x work%, P = T x late penalty %,
F = cancellation fee, flat or percentage of T; all rounded half-up):

    status                 artist gets               client gets
    completed              T                         0
    completedLate          T - P                     P
    cancelledClient        min(T, W + F)             T - artist
    cancelledClientLate    max(0, W - P)             T - artist
    cancelledArtist        max(0, W - F)             T - artist
    cancelledArtistLate    max(0, W - P - F)         T - artist
    notCompleted           0                         T
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Tuple

from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..models import Contract, LedgerEntry
from .errors import IllegalTransition, ValidationError
from .snapshot import ListingSnapshot

logger = get_logger(__name__)

ACTIVE = "active"
TERMINAL_STATUSES = (
    "completed",
    "completedLate",
    "cancelledClient",
    "cancelledClientLate",
    "cancelledArtist",
    "cancelledArtistLate",
    "notCompleted",
)


def percent_of(amount: int, percent: int) -> int:
    value = Decimal(amount) * Decimal(percent) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# artist share keyed by terminal status: f(T, W, P, F)
_ARTIST_SHARE: Dict[str, Callable[[int, int, int, int], int]] = {
    "completed": lambda T, W, P, F: T,
    "completedLate": lambda T, W, P, F: T - P,
    "cancelledClient": lambda T, W, P, F: min(T, W + F),
    "cancelledClientLate": lambda T, W, P, F: max(0, W - P),
    "cancelledArtist": lambda T, W, P, F: max(0, W - F),
    "cancelledArtistLate": lambda T, W, P, F: max(0, W - P - F),
    "notCompleted": lambda T, W, P, F: 0,
}


def _snapshot(contract: Contract) -> ListingSnapshot:
    return ListingSnapshot.model_validate(contract.latest_terms.snapshot)


def cancellation_fee(contract: Contract) -> int:
    fee = _snapshot(contract).cancellation_fee
    if fee.kind == "percentage":
        return percent_of(contract.total, fee.amount)
    return min(fee.amount, contract.total)


def entitlements(contract: Contract, status: str) -> Tuple[int, int]:
    """(artist, client) shares of the contract total for a terminal status."""
    if status not in _ARTIST_SHARE:
        raise IllegalTransition(contract.status, f"settle as {status}")
    snap = _snapshot(contract)
    T = contract.total
    W = percent_of(T, contract.work_percentage or 0)
    P = percent_of(T, snap.late_penalty_percent)
    F = cancellation_fee(contract)
    artist = max(0, min(T, _ARTIST_SHARE[status](T, W, P, F)))
    return artist, T - artist


def recompute_total(contract: Contract) -> int:
    contract.total = (
        contract.base + contract.option_fees + contract.addons + contract.rush_fee
        - contract.discount + contract.surcharge + contract.runtime_fees
    )
    return contract.total


def _ledger(db: Session, contract: Contract, kind: str, party: str, amount: int, key: str, now: datetime, memo=None):
    entry = LedgerEntry(
        contract_id=contract.id,
        kind=kind,
        party=party,
        amount=amount,
        memo=memo,
        dedupe_key=key,
        created_at=now,
    )
    db.add(entry)
    return entry


def hold_escrow(db: Session, contract: Contract, now: datetime) -> None:
    _ledger(db, contract, "escrowHold", "client", contract.total, f"contract:{contract.id}:escrowHold", now,
            memo=f"proposal {contract.proposal_id} paid")


def apply_runtime_fees(db: Session, contract: Contract, ticket, now: datetime) -> None:
    """Book `ticket.runtime_fee` and rebuild contract.runtime_fees from all tickets."""
    if ticket.runtime_fee:
        _ledger(db, contract, "runtimeFee", "client", ticket.runtime_fee,
                f"ticket:{ticket.id}:runtimeFee", now, memo=f"{ticket.kind} ticket {ticket.id}")
    contract.runtime_fees = sum(t.runtime_fee or 0 for t in contract.tickets)
    recompute_total(contract)


def terminate(db: Session, contract: Contract, status: str, now: datetime) -> bool:
    """
    Move an active contract to a terminal status and settle it.

    Returns False when the contract already sits in `status` (a retried
    transition is a no-op). Any other non-active source is illegal.
    """
    if contract.status == status:
        return False
    if contract.status != ACTIVE:
        raise IllegalTransition(contract.status, status)

    previous = contract.status
    contract.status = status
    contract.completed_at = now
    if status in ("completed", "completedLate"):
        contract.work_percentage = 100
    settle(db, contract, now)
    logger.info("contract %s %s -> %s (artist %s, client %s)", contract.id, previous, status,
                contract.owed_to_artist, contract.owed_to_client)
    return True


def settle(db: Session, contract: Contract, now: datetime) -> None:
    if contract.settled_at is not None:
        return
    artist, client = entitlements(contract, contract.status)
    contract.owed_to_artist = artist
    contract.owed_to_client = client
    contract.settled_at = now
    _ledger(db, contract, "artistEntitlement", "artist", artist,
            f"contract:{contract.id}:artistEntitlement", now, memo=contract.status)
    _ledger(db, contract, "clientEntitlement", "client", client,
            f"contract:{contract.id}:clientEntitlement", now, memo=contract.status)


def record_claim(db: Session, contract: Contract, party: str, now: datetime) -> int:
    if contract.settled_at is None:
        raise IllegalTransition(contract.status, "claim")
    claimed_attr = f"{party}_claimed_at"
    if getattr(contract, claimed_attr) is not None:
        raise IllegalTransition("claimed", "claim", f"{party} already claimed contract {contract.id}")

    amount = contract.owed_to_artist if party == "artist" else contract.owed_to_client
    if not amount:
        raise ValidationError("party", f"nothing is owed to the {party}")

    kind = "artistPayout" if party == "artist" else "clientRefund"
    _ledger(db, contract, kind, party, amount, f"contract:{contract.id}:{kind}", now)
    setattr(contract, claimed_attr, now)
    logger.info("contract %s %s claimed %s", contract.id, party, amount)
    return amount
