from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_swap_core"
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _jsonb(name, default):
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text(f"'{default}'::jsonb"))


def upgrade():
    op.create_table(
        "listings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(length=120), nullable=False),
        sa.Column("source_booking_id", sa.String(length=120), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        _jsonb("payment_types", '["booking"]'),
        sa.Column("min_cash_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("cash_currency", sa.String(length=3), nullable=True),
        sa.Column("acceptance_strategy", sa.String(length=20), nullable=False, server_default="first_match"),
        sa.Column("auction_id", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_listings_owner", "listings", ["owner_id"])
    op.create_index("ix_listings_status", "listings", ["status"])

    op.create_table(
        "swap_targets",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("source_listing_id", sa.String(), sa.ForeignKey("listings.id"), nullable=True),
        sa.Column("target_listing_id", sa.String(), sa.ForeignKey("listings.id"), nullable=False),
        sa.Column("proposer_id", sa.String(length=120), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
        sa.Column("proposal_type", sa.String(length=20), nullable=False, server_default="booking"),
        sa.Column("message", sa.Text(), nullable=True),
        _jsonb("conditions", "[]"),
        sa.Column("cash_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("cash_currency", sa.String(length=3), nullable=True),
        sa.Column("payment_method_id", sa.String(length=120), nullable=True),
        sa.Column("resolution_reason", sa.Text(), nullable=True),
        *_audit_columns(),
    )
    op.create_index(
        "uq_swap_targets_active_source",
        "swap_targets",
        ["source_listing_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active' AND source_listing_id IS NOT NULL"),
    )
    op.create_index(
        "uq_swap_targets_active_cash_offer",
        "swap_targets",
        ["target_listing_id", "proposer_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active' AND source_listing_id IS NULL"),
    )
    op.create_index("ix_swap_targets_target_status", "swap_targets", ["target_listing_id", "status"])
    op.create_index("ix_swap_targets_proposer", "swap_targets", ["proposer_id"])

    op.create_table(
        "auctions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("listing_id", sa.String(), sa.ForeignKey("listings.id"), nullable=False, unique=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="open"),
        sa.Column("allow_booking_proposals", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_cash_proposals", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("winning_proposal_id", sa.String(), nullable=True),
        *_audit_columns(),
    )
    op.create_index("ix_auctions_status_ends_at", "auctions", ["status", "ends_at"])

    op.create_table(
        "auction_proposals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("auction_id", sa.String(), sa.ForeignKey("auctions.id"), nullable=False),
        sa.Column("proposer_id", sa.String(length=120), nullable=False),
        sa.Column("proposal_type", sa.String(length=20), nullable=False),
        sa.Column("booking_id", sa.String(length=120), nullable=True),
        sa.Column("cash_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("cash_currency", sa.String(length=3), nullable=True),
        sa.Column("payment_method_id", sa.String(length=120), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="submitted"),
        *_audit_columns(),
    )
    op.create_index("ix_auction_proposals_auction_status", "auction_proposals", ["auction_id", "status"])

    op.create_table(
        "settlement_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("auction_proposal_id", sa.String(), nullable=True),
        sa.Column("listing_id", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(length=120), nullable=False),
        sa.Column("recipient_id", sa.String(length=120), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=False, server_default="initiated"),
        sa.Column("failed_stage", sa.String(length=30), nullable=True),
        sa.Column("escrow_id", sa.String(length=200), nullable=True),
        sa.Column("payment_transaction_id", sa.String(length=200), nullable=True),
        sa.Column("blockchain_transaction_id", sa.String(length=200), nullable=True),
        _jsonb("error_details", "{}"),
        _jsonb("compensation", "{}"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
    )
    op.create_index(
        "uq_settlement_records_target_live",
        "settlement_records",
        ["target_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('initiated', 'completed') AND target_id IS NOT NULL"),
    )
    op.create_index(
        "uq_settlement_records_proposal_live",
        "settlement_records",
        ["auction_proposal_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('initiated', 'completed') AND auction_proposal_id IS NOT NULL"),
    )
    op.create_index("ix_settlement_records_listing", "settlement_records", ["listing_id"])
    op.create_index("ix_settlement_records_status", "settlement_records", ["status"])

    op.create_table(
        "targeting_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="info"),
        sa.Column("source_listing_id", sa.String(), nullable=True),
        sa.Column("target_listing_id", sa.String(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("auction_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(length=120), nullable=True),
        sa.Column("counterparty_id", sa.String(length=120), nullable=True),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        _jsonb("detail", "{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_targeting_events_source", "targeting_events", ["source_listing_id"])
    op.create_index("ix_targeting_events_target", "targeting_events", ["target_listing_id"])
    op.create_index("ix_targeting_events_actor", "targeting_events", ["actor_id"])
    op.create_index("ix_targeting_events_counterparty", "targeting_events", ["counterparty_id"])
    op.create_index("ix_targeting_events_created", "targeting_events", ["created_at"])


def downgrade():
    op.drop_table("targeting_events")
    op.drop_table("settlement_records")
    op.drop_table("auction_proposals")
    op.drop_table("auctions")
    op.drop_table("swap_targets")
    op.drop_table("listings")
