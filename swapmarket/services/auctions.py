from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.core.clock import as_utc, utcnow
from swapmarket.core.telemetry import MetricsSink, NullMetricsSink
from swapmarket.errors import (
    AuctionNotEnded,
    AuctionNotFound,
    AuctionNotOpen,
    AuctionProposalNotFound,
    CannotProposeToOwnAuction,
    Forbidden,
    InvalidRequest,
    ListingNoLongerAvailable,
    ListingNotTargetable,
    ProposalAlreadyResolved,
    ProposalTypeNotAllowed,
    WinnerAlreadySelected,
)
from swapmarket.gateways.base import NotificationGateway
from swapmarket.gateways.notifications import notify
from swapmarket.models.auction import Auction, AuctionProposal
from swapmarket.models.listing import Listing
from swapmarket.models.settlement import SettlementRecord
from swapmarket.services.listing_store import claim_for_acceptance, effective_status, is_available, require_listing
from swapmarket.services.settlement import SettlementCoordinator, SettlementSubject
from swapmarket.services.targeting_history import record_event
from swapmarket.services.targets import AcceptanceSnapshot, check_cash_offer


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProposalPayload:
    proposal_type: str  # "booking" | "cash"
    booking_id: str | None = None
    cash_amount: Any = None
    cash_currency: str | None = None
    payment_method_id: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class WinnerSelection:
    auction: Auction
    winning_proposal: AuctionProposal
    settlement: SettlementRecord


async def create_auction(
    db: AsyncSession,
    *,
    listing: Listing,
    ends_at: datetime,
    allow_booking_proposals: bool = True,
    allow_cash_proposals: bool = True,
    now: datetime | None = None,
) -> Auction:
    ends_at = as_utc(ends_at)
    if ends_at <= (now or utcnow()):
        raise InvalidRequest("Auction end must be in the future", ends_at=ends_at.isoformat())
    if not (allow_booking_proposals or allow_cash_proposals):
        raise InvalidRequest("Auction must allow at least one proposal type")
    if listing.acceptance_strategy != "auction":
        raise InvalidRequest("Listing does not use auction acceptance", listing_id=listing.id)

    auction = Auction(
        listing_id=listing.id,
        ends_at=ends_at,
        status="open",
        allow_booking_proposals=allow_booking_proposals,
        allow_cash_proposals=allow_cash_proposals,
    )
    db.add(auction)
    await db.flush()
    listing.auction_id = auction.id
    await db.flush()
    return auction


async def get_proposal(db: AsyncSession, proposal_id: str, *, refresh: bool = False) -> AuctionProposal | None:
    stmt = select(AuctionProposal).where(AuctionProposal.id == proposal_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def _load_auction(db: AsyncSession, auction_id: str) -> Auction:
    auction = (await db.execute(
        select(Auction).where(Auction.id == auction_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if auction is None:
        raise AuctionNotFound(auction_id=auction_id)
    return auction


class AuctionManager:
    """
    open -> ended -> winner_selected.

    The open -> ended edge is applied lazily by every operation here and by
    the background sweep; both go through close_if_due. Winner selection is
    always an explicit owner action.
    """

    def __init__(
        self,
        *,
        settlement: SettlementCoordinator,
        notifications: NotificationGateway,
        metrics: MetricsSink | None = None,
    ):
        self.settlement = settlement
        self.notifications = notifications
        self.metrics = metrics or NullMetricsSink()

    async def close_if_due(self, db: AsyncSession, auction_id: str, *, now: datetime | None = None) -> bool:
        """
        Move a due auction to ended. Safe to race: only the caller whose
        update hit the row writes the history event and notifies the owner.
        Commits when it closed the auction.
        """
        now = now or utcnow()
        result = await db.execute(
            update(Auction)
            .where(Auction.id == auction_id, Auction.status == "open", Auction.ends_at <= now)
            .values(status="ended", ended_at=now)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            return False

        auction = await _load_auction(db, auction_id)
        listing = await require_listing(db, auction.listing_id)
        submitted = (await db.execute(
            select(AuctionProposal.id).where(
                AuctionProposal.auction_id == auction.id,
                AuctionProposal.status == "submitted",
            )
        )).scalars().all()

        await record_event(
            db,
            event_type="auction_ended",
            message=f"Auction {auction.id} ended with {len(submitted)} proposals",
            target_listing_id=listing.id,
            auction_id=auction.id,
            counterparty_id=listing.owner_id,
            detail={"proposal_count": len(submitted)},
        )
        await db.commit()

        self.metrics.increment("auction.closed")
        log.info("auction %s ended (%s proposals)", auction.id, len(submitted))
        await notify(self.notifications, "auction.ended", listing.owner_id, {
            "auction_id": auction.id,
            "listing_id": listing.id,
            "proposal_count": len(submitted),
        })
        return True

    async def close_due_auctions(self, db: AsyncSession, *, now: datetime | None = None, batch_size: int = 100) -> int:
        now = now or utcnow()
        due = (await db.execute(
            select(Auction.id)
            .where(Auction.status == "open", Auction.ends_at <= now)
            .order_by(Auction.ends_at.asc())
            .limit(batch_size)
        )).scalars().all()
        # end the read transaction before the per-auction writes
        await db.commit()

        closed = 0
        for auction_id in due:
            if await self.close_if_due(db, auction_id, now=now):
                closed += 1
        return closed

    async def get_auction(self, db: AsyncSession, auction_id: str, *, now: datetime | None = None) -> Auction:
        now = now or utcnow()
        auction = await _load_auction(db, auction_id)
        if auction.status == "open" and as_utc(auction.ends_at) <= now:
            await self.close_if_due(db, auction_id, now=now)
            auction = await _load_auction(db, auction_id)
        return auction

    async def list_proposals(self, db: AsyncSession, auction_id: str) -> list[AuctionProposal]:
        rows = (await db.execute(
            select(AuctionProposal)
            .where(AuctionProposal.auction_id == auction_id)
            .order_by(AuctionProposal.created_at.asc(), AuctionProposal.id.asc())
        )).scalars().all()
        return list(rows)

    async def submit_proposal(
        self,
        db: AsyncSession,
        auction_id: str,
        proposer_id: str,
        payload: ProposalPayload,
        *,
        now: datetime | None = None,
    ) -> AuctionProposal:
        now = now or utcnow()
        auction = await self.get_auction(db, auction_id, now=now)
        listing = await require_listing(db, auction.listing_id)

        if listing.owner_id == proposer_id:
            raise CannotProposeToOwnAuction(auction_id=auction.id)
        if auction.status != "open":
            raise AuctionNotOpen(auction_id=auction.id, status=auction.status)
        if not is_available(listing, now):
            raise ListingNoLongerAvailable(listing_id=listing.id, status=effective_status(listing, now))

        amount: Decimal | None = None
        currency: str | None = None
        if payload.proposal_type == "booking":
            if not auction.allow_booking_proposals:
                raise ProposalTypeNotAllowed(auction_id=auction.id, proposal_type="booking")
            if not payload.booking_id:
                raise InvalidRequest("booking_id is required for booking proposals")
        elif payload.proposal_type == "cash":
            if not auction.allow_cash_proposals:
                raise ProposalTypeNotAllowed(auction_id=auction.id, proposal_type="cash")
            if not payload.payment_method_id:
                raise InvalidRequest("payment_method_id is required for cash proposals")
            amount, currency = check_cash_offer(listing, payload.cash_amount, payload.cash_currency)
        else:
            raise InvalidRequest("Unknown proposal type", proposal_type=payload.proposal_type)

        proposal = AuctionProposal(
            auction_id=auction.id,
            proposer_id=proposer_id,
            proposal_type=payload.proposal_type,
            booking_id=payload.booking_id if payload.proposal_type == "booking" else None,
            cash_amount=amount,
            cash_currency=currency,
            payment_method_id=payload.payment_method_id if payload.proposal_type == "cash" else None,
            message=payload.message,
            status="submitted",
        )
        db.add(proposal)
        await db.flush()

        await record_event(
            db,
            event_type="auction_proposal_submitted",
            message=f"{payload.proposal_type.capitalize()} proposal submitted to auction {auction.id}",
            target_listing_id=listing.id,
            auction_id=auction.id,
            actor_id=proposer_id,
            counterparty_id=listing.owner_id,
            detail={"proposal_id": proposal.id, "proposal_type": payload.proposal_type},
        )
        await db.commit()

        await notify(self.notifications, "auction.proposal_received", listing.owner_id, {
            "auction_id": auction.id,
            "proposal_id": proposal.id,
            "proposal_type": payload.proposal_type,
        })
        return proposal

    async def withdraw_proposal(
        self,
        db: AsyncSession,
        proposal_id: str,
        proposer_id: str,
        *,
        auction_id: str | None = None,
        now: datetime | None = None,
    ) -> AuctionProposal:
        proposal = await get_proposal(db, proposal_id)
        if proposal is None or (auction_id is not None and proposal.auction_id != auction_id):
            raise AuctionProposalNotFound(proposal_id=proposal_id, auction_id=auction_id)
        if proposal.proposer_id != proposer_id:
            raise Forbidden("Only the proposer can withdraw this proposal", proposal_id=proposal.id)

        auction = await self.get_auction(db, proposal.auction_id, now=now)
        if auction.status != "open":
            raise AuctionNotOpen(auction_id=auction.id, status=auction.status)

        result = await db.execute(
            update(AuctionProposal)
            .where(AuctionProposal.id == proposal.id, AuctionProposal.status == "submitted")
            .values(status="withdrawn")
        )
        if int(result.rowcount or 0) != 1:
            raise ProposalAlreadyResolved(proposal_id=proposal.id)

        await record_event(
            db,
            event_type="auction_proposal_withdrawn",
            message=f"Proposal {proposal.id} withdrawn from auction {auction.id}",
            auction_id=auction.id,
            actor_id=proposer_id,
            detail={"proposal_id": proposal.id},
        )
        await db.commit()
        return await get_proposal(db, proposal.id, refresh=True)

    async def reject_proposal(
        self,
        db: AsyncSession,
        proposal_id: str,
        owner_id: str,
        *,
        reason: str | None = None,
    ) -> AuctionProposal:
        proposal = await get_proposal(db, proposal_id)
        if proposal is None:
            raise AuctionProposalNotFound(proposal_id=proposal_id)
        auction = await self.get_auction(db, proposal.auction_id)
        listing = await require_listing(db, auction.listing_id)
        if listing.owner_id != owner_id:
            raise Forbidden(auction_id=auction.id)

        result = await db.execute(
            update(AuctionProposal)
            .where(AuctionProposal.id == proposal.id, AuctionProposal.status == "submitted")
            .values(status="lost")
        )
        if int(result.rowcount or 0) != 1:
            raise ProposalAlreadyResolved(proposal_id=proposal.id)

        await record_event(
            db,
            event_type="auction_proposal_rejected",
            message=f"Proposal {proposal.id} rejected by the owner" + (f": {reason}" if reason else ""),
            target_listing_id=listing.id,
            auction_id=auction.id,
            actor_id=owner_id,
            counterparty_id=proposal.proposer_id,
            detail={"proposal_id": proposal.id, "reason": reason},
        )
        await db.commit()

        await notify(self.notifications, "proposal.rejected", proposal.proposer_id, {
            "auction_id": auction.id,
            "proposal_id": proposal.id,
            "reason": reason,
        })
        return await get_proposal(db, proposal.id, refresh=True)

    async def select_winner(
        self,
        db: AsyncSession,
        auction_id: str,
        proposal_id: str,
        owner_id: str,
        *,
        deadline: float | None = None,
        now: datetime | None = None,
    ) -> WinnerSelection:
        """
        Pick the winning proposal and settle it exactly like a direct accept.

        In one transaction: winner -> won, other submitted proposals -> lost,
        auction -> winner_selected, listing -> accepted. A failed settlement
        restores all of it, leaving the auction ended with its proposals
        submitted.
        """
        auction = await self.get_auction(db, auction_id, now=now)
        listing = await require_listing(db, auction.listing_id)
        if listing.owner_id != owner_id:
            raise Forbidden("Only the listing owner can select the winner", auction_id=auction.id)
        if auction.status == "winner_selected":
            raise WinnerAlreadySelected(auction_id=auction.id, winning_proposal_id=auction.winning_proposal_id)
        if auction.status != "ended":
            raise AuctionNotEnded(auction_id=auction.id, ends_at=as_utc(auction.ends_at).isoformat())

        proposal = await get_proposal(db, proposal_id)
        if proposal is None or proposal.auction_id != auction.id:
            raise AuctionProposalNotFound(auction_id=auction.id, proposal_id=proposal_id)
        if proposal.status != "submitted":
            raise ProposalAlreadyResolved(proposal_id=proposal.id, status=proposal.status)

        snapshot = AcceptanceSnapshot()

        result = await db.execute(
            update(Auction)
            .where(Auction.id == auction.id, Auction.status == "ended")
            .values(status="winner_selected", winning_proposal_id=proposal.id)
        )
        if int(result.rowcount or 0) != 1:
            raise WinnerAlreadySelected(auction_id=auction.id)
        snapshot.record("auction", auction.id, "ended", "winner_selected", winning_proposal_id=None)

        result = await db.execute(
            update(AuctionProposal)
            .where(AuctionProposal.id == proposal.id, AuctionProposal.status == "submitted")
            .values(status="won")
        )
        if int(result.rowcount or 0) != 1:
            await db.rollback()
            raise ProposalAlreadyResolved(proposal_id=proposal_id)
        snapshot.record("auction_proposal", proposal.id, "submitted", "won")

        losers = (await db.execute(
            select(AuctionProposal).where(
                AuctionProposal.auction_id == auction.id,
                AuctionProposal.status == "submitted",
                AuctionProposal.id != proposal.id,
            )
        )).scalars().all()
        if losers:
            await db.execute(
                update(AuctionProposal)
                .where(AuctionProposal.id.in_([p.id for p in losers]), AuctionProposal.status == "submitted")
                .values(status="lost")
            )
            for p in losers:
                snapshot.record("auction_proposal", p.id, "submitted", "lost")

        try:
            # the auction window governs, not the listing's own expiry
            prior = await claim_for_acceptance(db, listing.id, honour_expiry=False)
        except ListingNotTargetable as e:
            listing_id = listing.id
            await db.rollback()
            raise ListingNoLongerAvailable(listing_id=listing_id, status=e.details.get("status")) from e
        snapshot.record("listing", listing.id, prior, "accepted")

        await record_event(
            db,
            event_type="winner_selected",
            message=f"Proposal {proposal.id} selected as winner of auction {auction.id}",
            target_listing_id=listing.id,
            auction_id=auction.id,
            actor_id=owner_id,
            counterparty_id=proposal.proposer_id,
            detail={"proposal_id": proposal.id, "lost_proposal_ids": [p.id for p in losers]},
        )
        await db.flush()

        subject = SettlementSubject.from_auction_proposal(proposal, auction, listing)
        record = await self.settlement.settle(db, subject, snapshot, deadline=deadline)

        for p in losers:
            await notify(self.notifications, "auction.proposal_lost", p.proposer_id, {
                "auction_id": auction.id,
                "proposal_id": p.id,
            })

        return WinnerSelection(
            auction=await _load_auction(db, auction.id),
            winning_proposal=await get_proposal(db, proposal.id, refresh=True),
            settlement=record,
        )
