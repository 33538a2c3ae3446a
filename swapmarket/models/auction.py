from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from swapmarket.core.ids import gen_id

from swapmarket.models.base import Base, AuditMixin


AUCTION_STATUSES = ("open", "ended", "winner_selected")
PROPOSAL_STATUSES = ("submitted", "withdrawn", "won", "lost")


class Auction(AuditMixin, Base):
    __tablename__ = "auctions"
    __table_args__ = (
        Index("ix_auctions_status_ends_at", "status", "ends_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("auc"))
    listing_id: Mapped[str] = mapped_column(String, ForeignKey("listings.id"), nullable=False, unique=True)

    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="open")

    allow_booking_proposals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allow_cash_proposals: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    winning_proposal_id: Mapped[str | None] = mapped_column(String, nullable=True)


class AuctionProposal(AuditMixin, Base):
    __tablename__ = "auction_proposals"
    __table_args__ = (
        Index("ix_auction_proposals_auction_status", "auction_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("apr"))
    auction_id: Mapped[str] = mapped_column(String, ForeignKey("auctions.id"), nullable=False)
    proposer_id: Mapped[str] = mapped_column(String(120), nullable=False)

    # "booking" | "cash"
    proposal_type: Mapped[str] = mapped_column(String(20), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    cash_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cash_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="submitted")
