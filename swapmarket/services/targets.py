from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.core.clock import utcnow
from swapmarket.errors import (
    AuctionModeListing,
    CashOfferBelowMinimum,
    CircularTargeting,
    DuplicateActiveTarget,
    InvalidRequest,
    ListingNotTargetable,
    NoActiveTarget,
    SelfTargetingNotAllowed,
    TargetAlreadyResolved,
    TargetNotFound,
    TargetingForbidden,
)
from swapmarket.models.auction import Auction, AuctionProposal
from swapmarket.models.listing import Listing
from swapmarket.models.target import Target
from swapmarket.services.listing_store import (
    claim_for_acceptance,
    effective_status,
    is_available,
    refresh_targeted_flag,
    require_listing,
)
from swapmarket.services.targeting_history import record_event


# how far a chain of active targets is followed when looking for cycles
MAX_CYCLE_DEPTH = 10


@dataclass(frozen=True)
class StatusChange:
    kind: str  # "listing" | "target" | "auction" | "auction_proposal"
    id: str
    before: str
    after: str
    # extra columns put back together with the status
    reset: dict[str, Any] = field(default_factory=dict)


@dataclass
class AcceptanceSnapshot:
    """Pre-accept statuses of every row an acceptance touched."""

    changes: list[StatusChange] = field(default_factory=list)

    def record(self, kind: str, id: str, before: str, after: str, **reset: Any) -> None:
        self.changes.append(StatusChange(kind=kind, id=id, before=before, after=after, reset=reset))

    def before(self, kind: str, id: str) -> str | None:
        for change in self.changes:
            if change.kind == kind and change.id == id:
                return change.before
        return None

    def to_dict(self) -> dict:
        return {"changes": [asdict(c) for c in self.changes]}

    @classmethod
    def from_dict(cls, data: dict) -> "AcceptanceSnapshot":
        return cls(changes=[StatusChange(**c) for c in data.get("changes", [])])


@dataclass(frozen=True)
class AcceptOutcome:
    target: Target
    snapshot: AcceptanceSnapshot
    rejected: list[Target]


_MODELS = {
    "listing": Listing,
    "target": Target,
    "auction": Auction,
    "auction_proposal": AuctionProposal,
}


async def get_target(db: AsyncSession, target_id: str, *, refresh: bool = False) -> Target | None:
    stmt = select(Target).where(Target.id == target_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_active_outgoing(db: AsyncSession, source_listing_id: str, *, for_update: bool = False) -> Target | None:
    stmt = select(Target).where(Target.source_listing_id == source_listing_id, Target.status == "active")
    if for_update:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_active_incoming(db: AsyncSession, target_listing_id: str) -> list[Target]:
    stmt = (
        select(Target)
        .where(Target.target_listing_id == target_listing_id, Target.status == "active")
        .order_by(Target.created_at.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


def _check_booking_edge(source: Listing, target_listing: Listing, proposer_id: str, now: datetime) -> None:
    if target_listing.owner_id == proposer_id or source.id == target_listing.id or source.owner_id == target_listing.owner_id:
        raise SelfTargetingNotAllowed(source_listing_id=source.id, target_listing_id=target_listing.id)
    if source.owner_id != proposer_id:
        raise TargetingForbidden(source_listing_id=source.id)
    if target_listing.acceptance_strategy == "auction":
        raise AuctionModeListing(target_listing_id=target_listing.id, auction_id=target_listing.auction_id)
    for listing in (source, target_listing):
        if not is_available(listing, now):
            raise ListingNotTargetable(listing_id=listing.id, status=effective_status(listing, now))
    if "booking" not in (target_listing.payment_types or []):
        raise ListingNotTargetable(
            "Listing does not accept booking exchanges",
            listing_id=target_listing.id,
            status=target_listing.status,
        )


async def _closes_cycle(db: AsyncSession, source_listing_id: str, target_listing_id: str) -> bool:
    # Each listing has at most one active outgoing target, so the chain is a path.
    current = target_listing_id
    for _ in range(MAX_CYCLE_DEPTH):
        nxt = await get_active_outgoing(db, current)
        if nxt is None:
            return False
        if nxt.target_listing_id == source_listing_id:
            return True
        current = nxt.target_listing_id
    return False


async def _insert_target(db: AsyncSession, target: Target) -> Target:
    db.add(target)
    try:
        await db.flush()
    except IntegrityError as e:
        # a concurrent insert won the partial unique index
        raise DuplicateActiveTarget(
            source_listing_id=target.source_listing_id,
            target_listing_id=target.target_listing_id,
        ) from e
    return target


async def validate_new_target(
    db: AsyncSession,
    *,
    source_listing_id: str,
    target_listing_id: str,
    proposer_id: str,
    now: datetime | None = None,
) -> tuple[Listing, Listing]:
    """Every check create_target runs, without writing. Raises the first failure."""
    now = now or utcnow()
    source = await require_listing(db, source_listing_id)
    target_listing = await require_listing(db, target_listing_id)

    _check_booking_edge(source, target_listing, proposer_id, now)

    if await get_active_outgoing(db, source.id) is not None:
        raise DuplicateActiveTarget(source_listing_id=source.id)
    if await _closes_cycle(db, source.id, target_listing.id):
        raise CircularTargeting(source_listing_id=source.id, target_listing_id=target_listing.id)
    return source, target_listing


async def create_target(
    db: AsyncSession,
    *,
    source_listing_id: str,
    target_listing_id: str,
    proposer_id: str,
    message: str | None = None,
    conditions: list[str] | None = None,
    now: datetime | None = None,
) -> Target:
    source, target_listing = await validate_new_target(
        db,
        source_listing_id=source_listing_id,
        target_listing_id=target_listing_id,
        proposer_id=proposer_id,
        now=now,
    )

    target = await _insert_target(db, Target(
        source_listing_id=source.id,
        target_listing_id=target_listing.id,
        proposer_id=proposer_id,
        status="active",
        proposal_type="booking",
        message=message,
        conditions=list(conditions or []),
    ))
    await refresh_targeted_flag(db, source.id)

    await record_event(
        db,
        event_type="targeted",
        message=f"Listing {source.id} targeted {target_listing.id}",
        source_listing_id=source.id,
        target_listing_id=target_listing.id,
        target_id=target.id,
        actor_id=proposer_id,
        counterparty_id=target_listing.owner_id,
    )
    return target


def _parse_cash(amount: Any, currency: str | None) -> tuple[Decimal, str]:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidRequest("Cash amount is not a number", amount=str(amount)) from e
    if not value.is_finite() or value <= 0:
        raise InvalidRequest("Cash amount must be positive", amount=str(amount))
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise InvalidRequest("Currency must be a 3-letter code", currency=currency)
    return value, currency.upper()


def check_cash_offer(listing: Listing, amount: Any, currency: str | None) -> tuple[Decimal, str]:
    """Validate a cash offer against the listing's cash-with-minimum terms."""
    value, code = _parse_cash(amount, currency)
    if "cash" not in (listing.payment_types or []):
        raise ListingNotTargetable("Listing does not accept cash offers", listing_id=listing.id, status=listing.status)
    if listing.cash_currency and listing.cash_currency != code:
        raise InvalidRequest(
            "Cash offer currency does not match the listing",
            currency=code,
            listing_currency=listing.cash_currency,
        )
    if listing.min_cash_amount is not None and value < listing.min_cash_amount:
        raise CashOfferBelowMinimum(amount=str(value), minimum=str(listing.min_cash_amount))
    return value, code


async def create_cash_target(
    db: AsyncSession,
    *,
    target_listing_id: str,
    proposer_id: str,
    amount: Any,
    currency: str,
    payment_method_id: str,
    message: str | None = None,
    conditions: list[str] | None = None,
    now: datetime | None = None,
) -> Target:
    now = now or utcnow()
    listing = await require_listing(db, target_listing_id)

    if listing.owner_id == proposer_id:
        raise SelfTargetingNotAllowed(target_listing_id=listing.id)
    if listing.acceptance_strategy == "auction":
        raise AuctionModeListing(target_listing_id=listing.id, auction_id=listing.auction_id)
    if not is_available(listing, now):
        raise ListingNotTargetable(listing_id=listing.id, status=effective_status(listing, now))
    if not payment_method_id:
        raise InvalidRequest("payment_method_id is required for cash offers")
    value, code = check_cash_offer(listing, amount, currency)

    existing = (await db.execute(
        select(Target.id).where(
            Target.target_listing_id == listing.id,
            Target.proposer_id == proposer_id,
            Target.source_listing_id.is_(None),
            Target.status == "active",
        )
    )).scalar_one_or_none()
    if existing is not None:
        raise DuplicateActiveTarget(target_listing_id=listing.id, target_id=existing)

    target = await _insert_target(db, Target(
        source_listing_id=None,
        target_listing_id=listing.id,
        proposer_id=proposer_id,
        status="active",
        proposal_type="cash",
        message=message,
        conditions=list(conditions or []),
        cash_amount=value,
        cash_currency=code,
        payment_method_id=payment_method_id,
    ))

    await record_event(
        db,
        event_type="targeted",
        message=f"Cash offer of {value} {code} on {listing.id}",
        target_listing_id=listing.id,
        target_id=target.id,
        actor_id=proposer_id,
        counterparty_id=listing.owner_id,
        detail={"proposal_type": "cash", "amount": str(value), "currency": code},
    )
    return target


async def retarget(
    db: AsyncSession,
    *,
    source_listing_id: str,
    new_target_listing_id: str,
    proposer_id: str,
    message: str | None = None,
    conditions: list[str] | None = None,
    now: datetime | None = None,
) -> Target:
    """
    Supersede the source's active target and point it at a new listing.
    Both writes happen in the caller's transaction; nothing is committed here.
    """
    now = now or utcnow()
    source = await require_listing(db, source_listing_id)
    if source.owner_id != proposer_id:
        raise TargetingForbidden(source_listing_id=source.id)

    current = await get_active_outgoing(db, source.id, for_update=True)
    if current is None:
        raise NoActiveTarget(source_listing_id=source.id)
    if current.target_listing_id == new_target_listing_id:
        raise InvalidRequest("Source already targets this listing", target_listing_id=new_target_listing_id)

    new_listing = await require_listing(db, new_target_listing_id)
    _check_booking_edge(source, new_listing, proposer_id, now)
    if await _closes_cycle(db, source.id, new_listing.id):
        raise CircularTargeting(source_listing_id=source.id, target_listing_id=new_listing.id)

    result = await db.execute(
        update(Target)
        .where(Target.id == current.id, Target.status == "active")
        .values(status="superseded", resolution_reason="retargeted")
    )
    if int(result.rowcount or 0) != 1:
        raise TargetAlreadyResolved(target_id=current.id)

    target = await _insert_target(db, Target(
        source_listing_id=source.id,
        target_listing_id=new_listing.id,
        proposer_id=proposer_id,
        status="active",
        proposal_type="booking",
        message=message,
        conditions=list(conditions or []),
    ))

    await record_event(
        db,
        event_type="retargeted",
        message=f"Listing {source.id} retargeted from {current.target_listing_id} to {new_listing.id}",
        source_listing_id=source.id,
        target_listing_id=new_listing.id,
        target_id=target.id,
        actor_id=proposer_id,
        counterparty_id=new_listing.owner_id,
        detail={"previous_target_id": current.id, "previous_target_listing_id": current.target_listing_id},
    )
    return target


async def remove_target(db: AsyncSession, *, source_listing_id: str, proposer_id: str) -> Target:
    source = await require_listing(db, source_listing_id)
    if source.owner_id != proposer_id:
        raise TargetingForbidden(source_listing_id=source.id)

    current = await get_active_outgoing(db, source.id, for_update=True)
    if current is None:
        raise NoActiveTarget(source_listing_id=source.id)

    result = await db.execute(
        update(Target)
        .where(Target.id == current.id, Target.status == "active")
        .values(status="cancelled", resolution_reason="removed by proposer")
    )
    if int(result.rowcount or 0) != 1:
        raise TargetAlreadyResolved(target_id=current.id)

    await refresh_targeted_flag(db, source.id)
    await record_event(
        db,
        event_type="removed",
        message=f"Listing {source.id} removed its target on {current.target_listing_id}",
        source_listing_id=source.id,
        target_listing_id=current.target_listing_id,
        target_id=current.id,
        actor_id=proposer_id,
    )
    await db.refresh(current)
    return current


async def accept_target(db: AsyncSession, target_id: str, *, now: datetime | None = None) -> AcceptOutcome:
    """
    Accept one target and reject every competitor onto the same listing.

    Runs inside the caller's transaction. The listing row is claimed first
    with a status-keyed update; of several concurrent accepts onto one
    listing exactly one claims it, the others see TargetAlreadyResolved.
    """
    now = now or utcnow()
    target = await get_target(db, target_id)
    if target is None:
        raise TargetNotFound(target_id=target_id)
    if target.status != "active":
        raise TargetAlreadyResolved(target_id=target.id, status=target.status)

    snapshot = AcceptanceSnapshot()

    try:
        prior = await claim_for_acceptance(db, target.target_listing_id, now=now)
    except ListingNotTargetable as e:
        if e.details.get("status") in ("accepted", "completed"):
            raise TargetAlreadyResolved(target_id=target.id, listing_status=e.details["status"]) from e
        raise
    snapshot.record("listing", target.target_listing_id, prior, "accepted")

    result = await db.execute(
        update(Target)
        .where(Target.id == target.id, Target.status == "active")
        .values(status="accepted", resolution_reason=None)
    )
    if int(result.rowcount or 0) != 1:
        raise TargetAlreadyResolved(target_id=target.id)
    snapshot.record("target", target.id, "active", "accepted", resolution_reason=None)

    if target.source_listing_id:
        # the proposer's listing is consumed by the swap as well
        source_prior = await claim_for_acceptance(db, target.source_listing_id, now=now)
        snapshot.record("listing", target.source_listing_id, source_prior, "accepted")

    competitors = [t for t in await list_active_incoming(db, target.target_listing_id) if t.id != target.id]
    if competitors:
        await db.execute(
            update(Target)
            .where(Target.id.in_([t.id for t in competitors]), Target.status == "active")
            .values(status="rejected", resolution_reason="another proposal was accepted")
        )
        for t in competitors:
            snapshot.record("target", t.id, "active", "rejected", resolution_reason=None)
            moved = await refresh_targeted_flag(db, t.source_listing_id)
            if moved:
                snapshot.record("listing", t.source_listing_id, *moved)
            await record_event(
                db,
                event_type="rejected",
                message=f"Target {t.id} rejected: another proposal on {target.target_listing_id} was accepted",
                source_listing_id=t.source_listing_id,
                target_listing_id=t.target_listing_id,
                target_id=t.id,
                counterparty_id=t.proposer_id,
                detail={"accepted_target_id": target.id},
            )

    await record_event(
        db,
        event_type="accepted",
        message=f"Target {target.id} accepted on {target.target_listing_id}",
        source_listing_id=target.source_listing_id,
        target_listing_id=target.target_listing_id,
        target_id=target.id,
        counterparty_id=target.proposer_id,
        detail={"rejected_target_ids": [t.id for t in competitors]},
    )

    await db.flush()
    target = await get_target(db, target.id, refresh=True)
    rejected = [await get_target(db, t.id, refresh=True) for t in competitors]
    return AcceptOutcome(target=target, snapshot=snapshot, rejected=rejected)


async def reject_target(
    db: AsyncSession,
    target_id: str,
    *,
    reason: str | None = None,
    actor_id: str | None = None,
) -> Target:
    target = await get_target(db, target_id)
    if target is None:
        raise TargetNotFound(target_id=target_id)

    result = await db.execute(
        update(Target)
        .where(Target.id == target.id, Target.status == "active")
        .values(status="rejected", resolution_reason=reason)
    )
    if int(result.rowcount or 0) != 1:
        current = await get_target(db, target.id, refresh=True)
        raise TargetAlreadyResolved(target_id=target.id, status=current.status if current else None)

    await refresh_targeted_flag(db, target.source_listing_id)
    await record_event(
        db,
        event_type="rejected",
        message=f"Target {target.id} rejected" + (f": {reason}" if reason else ""),
        source_listing_id=target.source_listing_id,
        target_listing_id=target.target_listing_id,
        target_id=target.id,
        actor_id=actor_id,
        counterparty_id=target.proposer_id,
        detail={"reason": reason} if reason else None,
    )
    return await get_target(db, target.id, refresh=True)


async def restore_acceptance(db: AsyncSession, snapshot: AcceptanceSnapshot) -> list[StatusChange]:
    """
    Compensation for a failed settlement: undo the snapshot's writes in
    reverse order. Each write is keyed on the status the acceptance left
    behind; changes that no longer match are returned, not forced.
    """
    skipped: list[StatusChange] = []
    for change in reversed(snapshot.changes):
        model = _MODELS[change.kind]
        result = await db.execute(
            update(model)
            .where(model.id == change.id, model.status == change.after)
            .values(status=change.before, **change.reset)
        )
        if int(result.rowcount or 0) != 1:
            skipped.append(change)
    return skipped


async def retire_consumed_listing(db: AsyncSession, listing_id: str, *, keep_target_id: str | None = None) -> list[Target]:
    """
    A completed listing can no longer be swapped: reject what still points
    at it and cancel what it still points at. Returns the touched targets.
    """
    touched: list[Target] = []

    incoming = [t for t in await list_active_incoming(db, listing_id) if t.id != keep_target_id]
    if incoming:
        await db.execute(
            update(Target)
            .where(Target.id.in_([t.id for t in incoming]), Target.status == "active")
            .values(status="rejected", resolution_reason="listing was swapped")
        )
        for t in incoming:
            await refresh_targeted_flag(db, t.source_listing_id)
        touched.extend(incoming)

    outgoing = await get_active_outgoing(db, listing_id)
    if outgoing is not None and outgoing.id != keep_target_id:
        await db.execute(
            update(Target)
            .where(Target.id == outgoing.id, Target.status == "active")
            .values(status="cancelled", resolution_reason="source listing was swapped")
        )
        touched.append(outgoing)

    return touched
