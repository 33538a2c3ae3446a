from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.core.clock import as_utc, utcnow
from swapmarket.errors import InvalidRequest, ListingNotFound, ListingNotTargetable
from swapmarket.models.listing import AVAILABLE_STATUSES, Listing
from swapmarket.models.target import Target


PAYMENT_TYPES = ("booking", "cash")
ACCEPTANCE_STRATEGIES = ("first_match", "auction")


async def get_listing(
    db: AsyncSession,
    listing_id: str,
    *,
    for_update: bool = False,
    refresh: bool = False,
) -> Listing | None:
    stmt = select(Listing).where(Listing.id == listing_id)
    if for_update:
        stmt = stmt.with_for_update()
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def require_listing(db: AsyncSession, listing_id: str, **kwargs) -> Listing:
    listing = await get_listing(db, listing_id, **kwargs)
    if listing is None:
        raise ListingNotFound(listing_id=listing_id)
    return listing


def is_expired(listing: Listing, now: datetime | None = None) -> bool:
    expires_at = as_utc(listing.expires_at)
    return expires_at is not None and expires_at <= (now or utcnow())


def effective_status(listing: Listing, now: datetime | None = None) -> str:
    """
    Status as observed at read time. Expiry is never swept eagerly, so an
    available listing past its expires_at reads as "expired".
    """
    if listing.status in AVAILABLE_STATUSES and is_expired(listing, now):
        return "expired"
    return listing.status


def is_available(listing: Listing, now: datetime | None = None) -> bool:
    return effective_status(listing, now) in AVAILABLE_STATUSES


async def create_listing(
    db: AsyncSession,
    *,
    owner_id: str,
    source_booking_id: str,
    payment_types: Iterable[str] = ("booking",),
    min_cash_amount: Decimal | None = None,
    cash_currency: str | None = None,
    acceptance_strategy: str = "first_match",
    expires_at: datetime | None = None,
) -> Listing:
    types = list(dict.fromkeys(payment_types))
    if not types or any(t not in PAYMENT_TYPES for t in types):
        raise InvalidRequest("payment_types must be a non-empty subset of booking/cash", payment_types=types)
    if acceptance_strategy not in ACCEPTANCE_STRATEGIES:
        raise InvalidRequest("Unknown acceptance strategy", acceptance_strategy=acceptance_strategy)
    if min_cash_amount is not None and min_cash_amount < 0:
        raise InvalidRequest("min_cash_amount cannot be negative")

    listing = Listing(
        owner_id=owner_id,
        source_booking_id=source_booking_id,
        status="pending",
        payment_types=types,
        min_cash_amount=min_cash_amount,
        cash_currency=cash_currency.upper() if cash_currency else None,
        acceptance_strategy=acceptance_strategy,
        expires_at=expires_at,
    )
    db.add(listing)
    await db.flush()
    return listing


async def transition_status(
    db: AsyncSession,
    listing_id: str,
    *,
    from_statuses: Iterable[str],
    to_status: str,
) -> bool:
    """Conditional status write. False means another writer got there first."""
    result = await db.execute(
        update(Listing)
        .where(Listing.id == listing_id, Listing.status.in_(tuple(from_statuses)))
        .values(status=to_status)
    )
    return int(result.rowcount or 0) == 1


async def claim_for_acceptance(
    db: AsyncSession,
    listing_id: str,
    *,
    now: datetime | None = None,
    honour_expiry: bool = True,
) -> str:
    """
    Move an available listing to "accepted" and return the status it had.

    The write is keyed on the exact status that was read, so of two
    concurrent claims only one affects a row. The loser gets
    ListingNotTargetable carrying the status it lost to.
    """
    listing = await require_listing(db, listing_id, for_update=True)
    prior = listing.status
    status = effective_status(listing, now) if honour_expiry else prior

    if status in AVAILABLE_STATUSES:
        result = await db.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.status == prior)
            .values(status="accepted")
        )
        if int(result.rowcount or 0) == 1:
            return prior
        listing = await require_listing(db, listing_id, refresh=True)
        status = listing.status

    raise ListingNotTargetable(listing_id=listing_id, status=status)


async def has_active_outgoing(db: AsyncSession, listing_id: str) -> bool:
    stmt = select(func.count()).select_from(Target).where(
        Target.source_listing_id == listing_id,
        Target.status == "active",
    )
    return int((await db.execute(stmt)).scalar_one()) > 0


async def refresh_targeted_flag(db: AsyncSession, listing_id: str | None) -> tuple[str, str] | None:
    """
    pending <-> targeted follows whether the listing has an active outgoing
    target. Returns (before, after) when the status moved, else None.
    """
    if not listing_id:
        return None
    if await has_active_outgoing(db, listing_id):
        if await transition_status(db, listing_id, from_statuses=("pending",), to_status="targeted"):
            return ("pending", "targeted")
    elif await transition_status(db, listing_id, from_statuses=("targeted",), to_status="pending"):
        return ("targeted", "pending")
    return None
