from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.api.deps import get_services, get_user_id
from swapmarket.api.v1.serializers import event_out
from swapmarket.core.config import settings
from swapmarket.core.db import get_db
from swapmarket.errors import Forbidden
from swapmarket.schemas.history import HistoryPage
from swapmarket.services.listing_store import require_listing
from swapmarket.services.targeting_history import HistoryFilters
from swapmarket.wiring import Services

router = APIRouter()


@router.get("/targeting/history", response_model=HistoryPage)
async def targeting_history(
    listing_id: str | None = Query(default=None),
    event_type: list[str] = Query(default=[]),
    severity: list[str] = Query(default=[]),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    search: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=settings.history_page_max_limit),
    offset: int = Query(default=0, ge=0),
    order: Literal["asc", "desc"] = Query(default="desc"),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> HistoryPage:
    # listing history is visible to its owner; otherwise callers see their own events
    if listing_id:
        listing = await require_listing(db, listing_id)
        if listing.owner_id != user_id:
            raise Forbidden("Only the listing owner can view its history", listing_id=listing_id)
        filters_user = None
    else:
        filters_user = user_id

    page = await services.targeting.get_targeting_history(
        db,
        HistoryFilters(
            listing_id=listing_id,
            user_id=filters_user,
            event_types=tuple(event_type),
            severities=tuple(severity),
            date_from=date_from,
            date_to=date_to,
            search=search,
        ),
        limit=limit,
        offset=offset,
        order=order,
    )
    return HistoryPage(
        items=[event_out(e) for e in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )
