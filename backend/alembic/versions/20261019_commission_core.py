"""commission core schema

Revision ID: 20261019_commission_core
Revises:
Create Date: 2026-10-19 09:00:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_commission_core"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("email", sa.String, nullable=False, unique=True),
        sa.Column("display_name", sa.String, nullable=True),
        sa.Column("role_name", sa.String, nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        "listings",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("artist_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("1")),
        sa.Column("snapshot", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_listings_artist", "listings", ["artist_id"])

    op.create_table(
        "proposals",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("listing_id", sa.Integer, sa.ForeignKey("listings.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("artist_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("snapshot", sa.JSON, nullable=False),
        sa.Column("selection", sa.JSON, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("reference_images", sa.JSON, nullable=False),
        sa.Column("breakdown", sa.JSON, nullable=False),
        sa.Column("total", sa.Integer, nullable=False),
        sa.Column("surcharge", sa.Integer, nullable=False, server_default="0"),
        sa.Column("artist_discount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("adjustment_reason", sa.Text, nullable=True),
        sa.Column("rejection_reason", sa.Text, nullable=True),
        sa.Column("deadline_at", sa.DateTime, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("expires_at", sa.DateTime, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.CheckConstraint("total >= 0", name="ck_proposal_total"),
    )
    op.create_index("ix_proposals_status_expiry", "proposals", ["status", "expires_at"])

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("proposal_id", sa.Integer, sa.ForeignKey("proposals.id"), nullable=False),
        sa.Column("listing_id", sa.Integer, sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("artist_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("flow", sa.String(20), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("base", sa.Integer, nullable=False),
        sa.Column("option_fees", sa.Integer, nullable=False),
        sa.Column("addons", sa.Integer, nullable=False),
        sa.Column("rush_fee", sa.Integer, nullable=False),
        sa.Column("discount", sa.Integer, nullable=False),
        sa.Column("surcharge", sa.Integer, nullable=False),
        sa.Column("runtime_fees", sa.Integer, nullable=False),
        sa.Column("total", sa.Integer, nullable=False),
        sa.Column("owed_to_client", sa.Integer, nullable=True),
        sa.Column("owed_to_artist", sa.Integer, nullable=True),
        sa.Column("settled_at", sa.DateTime, nullable=True),
        sa.Column("client_claimed_at", sa.DateTime, nullable=True),
        sa.Column("artist_claimed_at", sa.DateTime, nullable=True),
        sa.Column("deadline_at", sa.DateTime, nullable=False),
        sa.Column("grace_ends_at", sa.DateTime, nullable=False),
        sa.Column("status", sa.String(24), nullable=False),
        sa.Column("work_percentage", sa.Integer, nullable=False, server_default="0"),
        sa.Column("revisions_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.UniqueConstraint("proposal_id", name="uix_contract_proposal"),
        sa.CheckConstraint("work_percentage >= 0 AND work_percentage <= 100", name="ck_contract_work_pct"),
    )
    op.create_index("ix_contracts_status", "contracts", ["status"])

    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("contract_id", sa.Integer, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("submitted_by_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("submitted_by_role", sa.String(10), nullable=False),
        sa.Column("counterparty_role", sa.String(10), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("evidence", sa.JSON, nullable=False),
        sa.Column("counter_description", sa.Text, nullable=True),
        sa.Column("counter_evidence", sa.JSON, nullable=False),
        sa.Column("counter_expires_at", sa.DateTime, nullable=False),
        sa.Column("countered_at", sa.DateTime, nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("outcome", sa.String(24), nullable=True),
        sa.Column("escalated_to_id", sa.Integer, sa.ForeignKey("tickets.id"), nullable=True),
        sa.Column("work_percentage", sa.Integer, nullable=True),
        sa.Column("milestone_idx", sa.Integer, nullable=True),
        sa.Column("fee", sa.Integer, nullable=True),
        sa.Column("fulfilled_at", sa.DateTime, nullable=True),
        sa.Column("change_request", sa.JSON, nullable=True),
        sa.Column("proposed_fee", sa.Integer, nullable=True),
        sa.Column("price_delta", sa.Integer, nullable=True),
        sa.Column("applied_terms_version", sa.Integer, nullable=True),
        sa.Column("runtime_fee", sa.Integer, nullable=False, server_default="0"),
        sa.Column("target_type", sa.String(32), nullable=True),
        sa.Column("target_id", sa.Integer, nullable=True),
        sa.Column("decision", sa.String(16), nullable=True),
        sa.Column("resolution_note", sa.Text, nullable=True),
        sa.Column("resolved_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("resolved_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
    )
    op.create_index("ix_tickets_contract_kind", "tickets", ["contract_id", "kind"])
    op.create_index("ix_tickets_status_expiry", "tickets", ["status", "counter_expires_at"])

    op.create_table(
        "contract_terms",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("contract_id", sa.Integer, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version_no", sa.Integer, nullable=False),
        sa.Column("snapshot", sa.JSON, nullable=False),
        sa.Column("selection", sa.JSON, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("reference_images", sa.JSON, nullable=False),
        sa.Column("deadline_at", sa.DateTime, nullable=False),
        sa.Column("breakdown", sa.JSON, nullable=False),
        sa.Column("source_ticket_id", sa.Integer, sa.ForeignKey("tickets.id"), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("contract_id", "version_no", name="uix_terms_version"),
    )

    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("contract_id", sa.Integer, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("idx", sa.Integer, nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("percent", sa.Integer, nullable=False),
        sa.Column("revision_policy", sa.JSON, nullable=True),
        sa.Column("revisions_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("accepted_at", sa.DateTime, nullable=True),
        sa.Column("rejected_at", sa.DateTime, nullable=True),
        sa.UniqueConstraint("contract_id", "idx", name="uix_milestone_order"),
        sa.CheckConstraint("percent >= 0 AND percent <= 100", name="ck_milestone_percent"),
    )

    op.create_table(
        "uploads",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("contract_id", sa.Integer, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("milestone_idx", sa.Integer, nullable=True),
        sa.Column("revision_ticket_id", sa.Integer, sa.ForeignKey("tickets.id"), nullable=True),
        sa.Column("images", sa.JSON, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("review_expires_at", sa.DateTime, nullable=True),
        sa.Column("reviewed_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
    )
    op.create_index("ix_uploads_review", "uploads", ["status", "review_expires_at"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("contract_id", sa.Integer, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(24), nullable=False),
        sa.Column("party", sa.String(10), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("memo", sa.Text, nullable=True),
        sa.Column("dedupe_key", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("dedupe_key", name="uix_ledger_dedupe"),
    )

    op.create_table(
        "contract_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("contract_id", sa.Integer, sa.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("actor_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("kind", sa.String(48), nullable=False),
        sa.Column("payload", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("contract_events")
    op.drop_table("ledger_entries")
    op.drop_index("ix_uploads_review", table_name="uploads")
    op.drop_table("uploads")
    op.drop_table("milestones")
    op.drop_table("contract_terms")
    op.drop_index("ix_tickets_status_expiry", table_name="tickets")
    op.drop_index("ix_tickets_contract_kind", table_name="tickets")
    op.drop_table("tickets")
    op.drop_index("ix_contracts_status", table_name="contracts")
    op.drop_table("contracts")
    op.drop_index("ix_proposals_status_expiry", table_name="proposals")
    op.drop_table("proposals")
    op.drop_index("ix_listings_artist", table_name="listings")
    op.drop_table("listings")
    op.drop_table("users")
