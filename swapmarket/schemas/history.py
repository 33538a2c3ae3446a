from datetime import datetime

from pydantic import BaseModel


class TargetingEventOut(BaseModel):
    id: str
    event_type: str
    severity: str
    message: str
    source_listing_id: str | None = None
    target_listing_id: str | None = None
    target_id: str | None = None
    auction_id: str | None = None
    actor_id: str | None = None
    counterparty_id: str | None = None
    detail: dict
    created_at: datetime


class HistoryPage(BaseModel):
    items: list[TargetingEventOut]
    total: int
    limit: int
    offset: int
    has_more: bool
