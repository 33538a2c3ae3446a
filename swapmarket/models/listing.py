from datetime import datetime
from decimal import Decimal

from sqlalchemy import Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from swapmarket.core.ids import gen_id

from swapmarket.models.base import Base, AuditMixin, JsonType


LISTING_STATUSES = ("pending", "targeted", "accepted", "rejected", "expired", "completed", "cancelled")

# statuses in which a listing can still receive and accept proposals
AVAILABLE_STATUSES = ("pending", "targeted")


class Listing(AuditMixin, Base):
    __tablename__ = "listings"
    __table_args__ = (
        Index("ix_listings_owner", "owner_id"),
        Index("ix_listings_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lst"))

    # materialized from the booking's owning user
    owner_id: Mapped[str] = mapped_column(String(120), nullable=False)
    source_booking_id: Mapped[str] = mapped_column(String(120), nullable=False)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")

    # subset of ["booking", "cash"]
    payment_types: Mapped[list] = mapped_column(JsonType, nullable=False, default=lambda: ["booking"])
    min_cash_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cash_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    # "first_match" | "auction"
    acceptance_strategy: Mapped[str] = mapped_column(String(20), nullable=False, default="first_match")
    auction_id: Mapped[str | None] = mapped_column(String, nullable=True)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
