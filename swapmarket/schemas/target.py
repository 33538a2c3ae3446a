from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class TargetCreate(BaseModel):
    target_listing_id: str = Field(min_length=1, max_length=120)
    message: str | None = Field(default=None, max_length=2000)
    conditions: list[str] = Field(default_factory=list)


class RetargetRequest(BaseModel):
    new_target_listing_id: str = Field(min_length=1, max_length=120)
    message: str | None = Field(default=None, max_length=2000)
    conditions: list[str] = Field(default_factory=list)


class CashOfferCreate(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3)
    payment_method_id: str = Field(min_length=1, max_length=120)
    message: str | None = Field(default=None, max_length=2000)
    conditions: list[str] = Field(default_factory=list)


class TargetOut(BaseModel):
    id: str
    source_listing_id: str | None
    target_listing_id: str
    proposer_id: str
    status: str
    proposal_type: str
    message: str | None
    conditions: list[str]
    cash_amount: Decimal | None = None
    cash_currency: str | None = None
    resolution_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EligibilityOut(BaseModel):
    eligible: bool
    code: str | None = None
    message: str | None = None
