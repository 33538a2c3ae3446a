from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from swapmarket.schemas.settlement import SettlementOut


class AuctionProposalCreate(BaseModel):
    proposal_type: Literal["booking", "cash"]
    booking_id: str | None = Field(default=None, max_length=120)
    cash_amount: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    cash_currency: str | None = Field(default=None, min_length=3, max_length=3)
    payment_method_id: str | None = Field(default=None, max_length=120)
    message: str | None = Field(default=None, max_length=2000)


class WinnerRequest(BaseModel):
    proposal_id: str = Field(min_length=1)
    deadline_seconds: float | None = Field(default=None, gt=0, le=300)


class AuctionOut(BaseModel):
    id: str
    listing_id: str
    status: str
    ends_at: datetime
    ended_at: datetime | None = None
    allow_booking_proposals: bool
    allow_cash_proposals: bool
    winning_proposal_id: str | None = None


class AuctionProposalOut(BaseModel):
    id: str
    auction_id: str
    proposer_id: str
    proposal_type: str
    booking_id: str | None = None
    cash_amount: Decimal | None = None
    cash_currency: str | None = None
    message: str | None = None
    status: str
    created_at: datetime | None = None


class WinnerSelectionOut(BaseModel):
    auction: AuctionOut
    winning_proposal: AuctionProposalOut
    settlement: SettlementOut
