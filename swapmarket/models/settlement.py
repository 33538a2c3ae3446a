from datetime import datetime
from decimal import Decimal

from sqlalchemy import Index, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from swapmarket.core.ids import gen_id

from swapmarket.models.base import Base, AuditMixin, JsonType


SETTLEMENT_STATUSES = ("initiated", "completed", "failed", "rolled_back", "requires_reconciliation")


class SettlementRecord(AuditMixin, Base):
    __tablename__ = "settlement_records"
    __table_args__ = (
        # exactly-once: a proposal can only have one in-flight or completed settlement
        Index(
            "uq_settlement_records_target_live",
            "target_id",
            unique=True,
            postgresql_where=text("status IN ('initiated', 'completed') AND target_id IS NOT NULL"),
            sqlite_where=text("status IN ('initiated', 'completed') AND target_id IS NOT NULL"),
        ),
        Index(
            "uq_settlement_records_proposal_live",
            "auction_proposal_id",
            unique=True,
            postgresql_where=text("status IN ('initiated', 'completed') AND auction_proposal_id IS NOT NULL"),
            sqlite_where=text("status IN ('initiated', 'completed') AND auction_proposal_id IS NOT NULL"),
        ),
        Index("ix_settlement_records_listing", "listing_id"),
        Index("ix_settlement_records_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("stl"))

    target_id: Mapped[str | None] = mapped_column(String, nullable=True)
    auction_proposal_id: Mapped[str | None] = mapped_column(String, nullable=True)
    listing_id: Mapped[str] = mapped_column(String, nullable=False)

    payer_id: Mapped[str] = mapped_column(String(120), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(120), nullable=False)

    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    status: Mapped[str] = mapped_column(String(40), nullable=False, default="initiated")
    # "payment" | "blockchain" | "finalize"
    failed_stage: Mapped[str | None] = mapped_column(String(30), nullable=True)

    escrow_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    payment_transaction_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    blockchain_transaction_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    error_details: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    # pre-accept statuses, used to restore on failure
    compensation: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
