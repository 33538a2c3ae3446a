from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.core.clock import as_utc
from swapmarket.core.config import settings
from swapmarket.errors import InvalidRequest
from swapmarket.models.targeting_event import SEVERITIES, TargetingEvent


async def record_event(
    db: AsyncSession,
    *,
    event_type: str,
    message: str,
    severity: str = "info",
    source_listing_id: str | None = None,
    target_listing_id: str | None = None,
    target_id: str | None = None,
    auction_id: str | None = None,
    actor_id: str | None = None,
    counterparty_id: str | None = None,
    detail: dict | None = None,
) -> None:
    db.add(TargetingEvent(
        event_type=event_type,
        severity=severity,
        source_listing_id=source_listing_id,
        target_listing_id=target_listing_id,
        target_id=target_id,
        auction_id=auction_id,
        actor_id=actor_id,
        counterparty_id=counterparty_id,
        message=message,
        detail=detail or {},
    ))


@dataclass(frozen=True)
class HistoryFilters:
    listing_id: str | None = None
    user_id: str | None = None
    event_types: tuple[str, ...] = ()
    severities: tuple[str, ...] = ()
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None


@dataclass(frozen=True)
class Page:
    items: list[Any]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


def _validate(filters: HistoryFilters, limit: int, offset: int, order: str) -> None:
    if not filters.listing_id and not filters.user_id:
        raise InvalidRequest("History requires a listing_id or a user_id")
    if limit < 1 or limit > settings.history_page_max_limit:
        raise InvalidRequest(f"limit must be between 1 and {settings.history_page_max_limit}", limit=limit)
    if offset < 0:
        raise InvalidRequest("offset cannot be negative", offset=offset)
    if order not in ("asc", "desc"):
        raise InvalidRequest("order must be 'asc' or 'desc'", order=order)
    unknown = [s for s in filters.severities if s not in SEVERITIES]
    if unknown:
        raise InvalidRequest("Unknown severity", severities=unknown)
    if filters.date_from and filters.date_to and as_utc(filters.date_from) > as_utc(filters.date_to):
        raise InvalidRequest("date_from must be before date_to")


async def get_targeting_history(
    db: AsyncSession,
    filters: HistoryFilters,
    *,
    limit: int = 50,
    offset: int = 0,
    order: str = "desc",
) -> Page:
    """
    Read-only view over the targeting event log.

    Scoped to a listing (as source or target) and/or a user (as actor or
    counterparty); newest first unless order="asc".
    """
    _validate(filters, limit, offset, order)

    conditions = []
    if filters.listing_id:
        conditions.append(or_(
            TargetingEvent.source_listing_id == filters.listing_id,
            TargetingEvent.target_listing_id == filters.listing_id,
        ))
    if filters.user_id:
        conditions.append(or_(
            TargetingEvent.actor_id == filters.user_id,
            TargetingEvent.counterparty_id == filters.user_id,
        ))
    if filters.event_types:
        conditions.append(TargetingEvent.event_type.in_(filters.event_types))
    if filters.severities:
        conditions.append(TargetingEvent.severity.in_(filters.severities))
    if filters.date_from:
        conditions.append(TargetingEvent.created_at >= as_utc(filters.date_from))
    if filters.date_to:
        conditions.append(TargetingEvent.created_at <= as_utc(filters.date_to))
    if filters.search:
        conditions.append(func.lower(TargetingEvent.message).contains(filters.search.lower(), autoescape=True))

    total = int((await db.execute(
        select(func.count()).select_from(TargetingEvent).where(*conditions)
    )).scalar_one())

    ordering = (
        (TargetingEvent.created_at.desc(), TargetingEvent.id.desc())
        if order == "desc"
        else (TargetingEvent.created_at.asc(), TargetingEvent.id.asc())
    )
    rows = (await db.execute(
        select(TargetingEvent).where(*conditions).order_by(*ordering).limit(limit).offset(offset)
    )).scalars().all()

    return Page(items=list(rows), total=total, limit=limit, offset=offset)
