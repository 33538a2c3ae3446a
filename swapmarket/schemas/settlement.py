from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class SettlementOut(BaseModel):
    id: str
    target_id: str | None = None
    auction_proposal_id: str | None = None
    listing_id: str
    payer_id: str
    recipient_id: str
    amount: Decimal | None = None
    currency: str | None = None
    status: str
    failed_stage: str | None = None
    escrow_id: str | None = None
    payment_transaction_id: str | None = None
    blockchain_transaction_id: str | None = None
    error_details: dict = Field(default_factory=dict)
    created_at: datetime | None = None
    completed_at: datetime | None = None


class SettlementPage(BaseModel):
    items: list[SettlementOut]
    total: int
    limit: int
    offset: int
    has_more: bool
