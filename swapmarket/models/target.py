from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from swapmarket.core.ids import gen_id

from swapmarket.models.base import Base, AuditMixin, JsonType


TARGET_STATUSES = ("active", "accepted", "rejected", "cancelled", "superseded")


class Target(AuditMixin, Base):
    __tablename__ = "swap_targets"
    __table_args__ = (
        # one active outgoing target per source listing
        Index(
            "uq_swap_targets_active_source",
            "source_listing_id",
            unique=True,
            postgresql_where=text("status = 'active' AND source_listing_id IS NOT NULL"),
            sqlite_where=text("status = 'active' AND source_listing_id IS NOT NULL"),
        ),
        # one active cash offer per proposer per listing
        Index(
            "uq_swap_targets_active_cash_offer",
            "target_listing_id",
            "proposer_id",
            unique=True,
            postgresql_where=text("status = 'active' AND source_listing_id IS NULL"),
            sqlite_where=text("status = 'active' AND source_listing_id IS NULL"),
        ),
        Index("ix_swap_targets_target_status", "target_listing_id", "status"),
        Index("ix_swap_targets_proposer", "proposer_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("tgt"))

    # null for cash offers
    source_listing_id: Mapped[str | None] = mapped_column(String, ForeignKey("listings.id"), nullable=True)
    target_listing_id: Mapped[str] = mapped_column(String, ForeignKey("listings.id"), nullable=False)
    proposer_id: Mapped[str] = mapped_column(String(120), nullable=False)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="active")

    # "booking" | "cash"
    proposal_type: Mapped[str] = mapped_column(String(20), nullable=False, default="booking")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    conditions: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)

    cash_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cash_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
