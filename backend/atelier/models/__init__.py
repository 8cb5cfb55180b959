# backend/atelier/models/__init__.py
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Index,
    CheckConstraint,
    Boolean,
    JSON,
    event,
    func,
)
from sqlalchemy.orm import declarative_base, relationship

from ..engine.errors import ConsistencyViolation

Base = declarative_base()


# =========================
# Users (identity is issued elsewhere; we keep id/email/role)
# =========================
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=True)
    role_name = Column(String, nullable=False, default="user")  # user | admin

    created_at = Column(DateTime, server_default=func.now())


# =========================
# Listings
# =========================
class Listing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, index=True)
    artist_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")
    snapshot = Column(JSON, nullable=False)  # ListingSnapshot.model_dump()

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_listings_artist", "artist_id"),)


# =========================
# Proposals
# =========================
class Proposal(Base):
    __tablename__ = "proposals"
    id = Column(Integer, primary_key=True, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="RESTRICT"), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    artist_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # frozen copies
    snapshot = Column(JSON, nullable=False)
    selection = Column(JSON, nullable=False)
    description = Column(Text, nullable=True)
    reference_images = Column(JSON, nullable=False, default=list)

    breakdown = Column(JSON, nullable=False)
    total = Column(Integer, nullable=False)
    surcharge = Column(Integer, nullable=False, default=0)
    artist_discount = Column(Integer, nullable=False, default=0)
    adjustment_reason = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    deadline_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default="pendingArtist")
    expires_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False)

    contract = relationship("Contract", back_populates="proposal", uselist=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_proposals_status_expiry", "status", "expires_at"),
        CheckConstraint("total >= 0", name="ck_proposal_total"),
    )


# =========================
# Contracts
# =========================
class Contract(Base):
    __tablename__ = "contracts"
    id = Column(Integer, primary_key=True, index=True)
    proposal_id = Column(Integer, ForeignKey("proposals.id"), nullable=False)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    artist_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    flow = Column(String(20), nullable=False, default="standard")
    currency = Column(String(3), nullable=False)

    # finance baseline (integer minor units)
    base = Column(Integer, nullable=False, default=0)
    option_fees = Column(Integer, nullable=False, default=0)
    addons = Column(Integer, nullable=False, default=0)
    rush_fee = Column(Integer, nullable=False, default=0)
    discount = Column(Integer, nullable=False, default=0)
    surcharge = Column(Integer, nullable=False, default=0)
    runtime_fees = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)

    # settlement
    owed_to_client = Column(Integer, nullable=True)
    owed_to_artist = Column(Integer, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    client_claimed_at = Column(DateTime, nullable=True)
    artist_claimed_at = Column(DateTime, nullable=True)

    deadline_at = Column(DateTime, nullable=False)
    grace_ends_at = Column(DateTime, nullable=False)
    status = Column(String(24), nullable=False, default="active")
    work_percentage = Column(Integer, nullable=False, default=0)
    revisions_used = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False)

    proposal = relationship("Proposal", back_populates="contract")
    terms = relationship(
        "ContractTerms", back_populates="contract", order_by="ContractTerms.version_no",
        cascade="all, delete-orphan",
    )
    milestones = relationship(
        "Milestone", back_populates="contract", order_by="Milestone.idx",
        cascade="all, delete-orphan",
    )
    uploads = relationship("Upload", back_populates="contract", order_by="Upload.id", cascade="all, delete-orphan")
    tickets = relationship("Ticket", back_populates="contract", order_by="Ticket.id", cascade="all, delete-orphan")
    ledger = relationship("LedgerEntry", back_populates="contract", order_by="LedgerEntry.id")
    events = relationship("ContractEvent", back_populates="contract", order_by="ContractEvent.id")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("proposal_id", name="uix_contract_proposal"),
        Index("ix_contracts_status", "status"),
        CheckConstraint("work_percentage >= 0 AND work_percentage <= 100", name="ck_contract_work_pct"),
    )

    @property
    def latest_terms(self):
        return self.terms[-1] if self.terms else None


class ContractTerms(Base):
    """One immutable version of the contract's commercial terms."""
    __tablename__ = "contract_terms"
    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    version_no = Column(Integer, nullable=False)

    snapshot = Column(JSON, nullable=False)
    selection = Column(JSON, nullable=False)
    description = Column(Text, nullable=True)
    reference_images = Column(JSON, nullable=False, default=list)
    deadline_at = Column(DateTime, nullable=False)
    breakdown = Column(JSON, nullable=False)

    source_ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=True)
    created_at = Column(DateTime, nullable=False)

    contract = relationship("Contract", back_populates="terms")

    __table_args__ = (UniqueConstraint("contract_id", "version_no", name="uix_terms_version"),)


@event.listens_for(ContractTerms, "before_update")
def _terms_are_append_only(mapper, connection, target):
    raise ConsistencyViolation(
        "contract terms are append-only; add a new version instead",
        {"contract_id": target.contract_id, "version_no": target.version_no},
    )


class Milestone(Base):
    __tablename__ = "milestones"
    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    idx = Column(Integer, nullable=False)  # 0-based order
    title = Column(String(255), nullable=False)
    percent = Column(Integer, nullable=False)
    revision_policy = Column(JSON, nullable=True)
    revisions_used = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default="pending")  # pending | inProgress | accepted | rejected
    started_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)

    contract = relationship("Contract", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint("contract_id", "idx", name="uix_milestone_order"),
        CheckConstraint("percent >= 0 AND percent <= 100", name="ck_milestone_percent"),
    )


class Upload(Base):
    __tablename__ = "uploads"
    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(20), nullable=False)  # progress | final | milestone | revision
    milestone_idx = Column(Integer, nullable=True)
    revision_ticket_id = Column(Integer, ForeignKey("tickets.id"), nullable=True)

    images = Column(JSON, nullable=False, default=list)
    description = Column(Text, nullable=True)

    # posted | submitted | accepted | rejected | forcedAccepted
    status = Column(String(20), nullable=False)
    review_expires_at = Column(DateTime, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False)

    contract = relationship("Contract", back_populates="uploads")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (Index("ix_uploads_review", "status", "review_expires_at"),)


# =========================
# Tickets (cancel | revision | change | resolution)
# =========================
class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(20), nullable=False)

    submitted_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    submitted_by_role = Column(String(10), nullable=False)  # client | artist
    counterparty_role = Column(String(10), nullable=False)

    description = Column(Text, nullable=True)
    evidence = Column(JSON, nullable=False, default=list)
    counter_description = Column(Text, nullable=True)
    counter_evidence = Column(JSON, nullable=False, default=list)
    counter_expires_at = Column(DateTime, nullable=False)
    countered_at = Column(DateTime, nullable=True)

    status = Column(String(20), nullable=False, default="open")  # open | awaitingReview | resolved | cancelled
    outcome = Column(String(24), nullable=True)
    escalated_to_id = Column(Integer, ForeignKey("tickets.id"), nullable=True)

    # cancel
    work_percentage = Column(Integer, nullable=True)
    # revision
    milestone_idx = Column(Integer, nullable=True)
    fee = Column(Integer, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    # change
    change_request = Column(JSON, nullable=True)
    proposed_fee = Column(Integer, nullable=True)
    price_delta = Column(Integer, nullable=True)
    applied_terms_version = Column(Integer, nullable=True)
    # amount this ticket contributes to contract.runtime_fees
    runtime_fee = Column(Integer, nullable=False, default=0)

    # resolution
    target_type = Column(String(32), nullable=True)
    target_id = Column(Integer, nullable=True)
    decision = Column(String(16), nullable=True)
    resolution_note = Column(Text, nullable=True)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False)

    contract = relationship("Contract", back_populates="tickets")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_tickets_contract_kind", "contract_id", "kind"),
        Index("ix_tickets_status_expiry", "status", "counter_expires_at"),
    )


# =========================
# Ledger (decisions only, never money movement)
# =========================
class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    # escrowHold | runtimeFee | artistEntitlement | clientEntitlement | artistPayout | clientRefund
    kind = Column(String(24), nullable=False)
    party = Column(String(10), nullable=False)  # client | artist
    amount = Column(Integer, nullable=False)
    memo = Column(Text, nullable=True)
    dedupe_key = Column(String(128), nullable=False)

    created_at = Column(DateTime, nullable=False)

    contract = relationship("Contract", back_populates="ledger")

    __table_args__ = (UniqueConstraint("dedupe_key", name="uix_ledger_dedupe"),)


class ContractEvent(Base):
    __tablename__ = "contract_events"
    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # None = sweep
    kind = Column(String(48), nullable=False)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False)

    contract = relationship("Contract", back_populates="events")
