from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.core.clock import utcnow
from swapmarket.core.telemetry import MetricsSink, NullMetricsSink
from swapmarket.errors import (
    AuctionModeListing,
    CannotAcceptOwnProposal,
    Forbidden,
    ListingExpired,
    ListingNoLongerAvailable,
    ListingNotTargetable,
    ProposalAlreadyResolved,
    ProposalNotFound,
    TargetAlreadyResolved,
)
from swapmarket.gateways.base import NotificationGateway
from swapmarket.gateways.notifications import notify
from swapmarket.models.auction import Auction, AuctionProposal
from swapmarket.models.settlement import SettlementRecord
from swapmarket.models.target import Target
from swapmarket.services.auctions import AuctionManager, get_proposal
from swapmarket.services.listing_store import effective_status, require_listing
from swapmarket.services.settlement import SettlementCoordinator, SettlementSubject
from swapmarket.services.targets import accept_target, get_target, reject_target


log = logging.getLogger(__name__)

Proposal = Union[Target, AuctionProposal]


@dataclass(frozen=True)
class AcceptanceResult:
    proposal: Proposal
    settlement: SettlementRecord
    rejected: list[Target] = field(default_factory=list)
    auction: Auction | None = None


@dataclass(frozen=True)
class RejectionResult:
    proposal: Proposal


class ProposalAcceptanceEngine:
    """
    Accept or reject a proposal on behalf of the listing owner.

    Proposal ids are either targets or auction proposals; the latter are
    routed through the AuctionManager so both paths share one settlement.
    """

    def __init__(
        self,
        *,
        settlement: SettlementCoordinator,
        auctions: AuctionManager,
        notifications: NotificationGateway,
        metrics: MetricsSink | None = None,
    ):
        self.settlement = settlement
        self.auctions = auctions
        self.notifications = notifications
        self.metrics = metrics or NullMetricsSink()

    async def accept_proposal(
        self,
        db: AsyncSession,
        proposal_id: str,
        user_id: str,
        *,
        deadline: float | None = None,
        now: datetime | None = None,
    ) -> AcceptanceResult:
        now = now or utcnow()

        target = await get_target(db, proposal_id)
        if target is None:
            auction_proposal = await get_proposal(db, proposal_id)
            if auction_proposal is None:
                raise ProposalNotFound(proposal_id=proposal_id)
            selection = await self.auctions.select_winner(
                db, auction_proposal.auction_id, auction_proposal.id, user_id, deadline=deadline, now=now,
            )
            return AcceptanceResult(
                proposal=selection.winning_proposal,
                settlement=selection.settlement,
                auction=selection.auction,
            )

        listing = await require_listing(db, target.target_listing_id)
        if target.proposer_id == user_id:
            raise CannotAcceptOwnProposal(proposal_id=target.id)
        if listing.owner_id != user_id:
            raise Forbidden(proposal_id=target.id)
        if target.status != "active":
            raise ProposalAlreadyResolved(proposal_id=target.id, status=target.status)
        status = effective_status(listing, now)
        if status == "expired":
            raise ListingExpired(listing_id=listing.id)
        if status not in ("pending", "targeted"):
            raise ListingNoLongerAvailable(listing_id=listing.id, status=status)
        if listing.acceptance_strategy == "auction":
            raise AuctionModeListing(target_listing_id=listing.id, auction_id=listing.auction_id)

        # rollback expires loaded rows
        target_id, listing_id = target.id, listing.id
        try:
            outcome = await accept_target(db, target_id, now=now)
        except TargetAlreadyResolved as e:
            # someone else won the listing; never retried
            await db.rollback()
            self.metrics.increment("acceptance.race_lost")
            log.info("accept of %s lost the race on %s", target_id, listing_id)
            raise ProposalAlreadyResolved(proposal_id=target_id, **e.details) from e
        except ListingNotTargetable as e:
            # the proposer's own listing moved on since the proposal was made
            await db.rollback()
            raise ListingNoLongerAvailable(**e.details) from e

        subject = SettlementSubject.from_target(outcome.target, listing)
        record = await self.settlement.settle(db, subject, outcome.snapshot, deadline=deadline)

        for rejected in outcome.rejected:
            await notify(self.notifications, "proposal.rejected", rejected.proposer_id, {
                "proposal_id": rejected.id,
                "listing_id": listing.id,
                "reason": "another proposal was accepted",
            })

        return AcceptanceResult(
            proposal=await get_target(db, target.id, refresh=True),
            settlement=record,
            rejected=[await get_target(db, t.id, refresh=True) for t in outcome.rejected],
        )

    async def reject_proposal(
        self,
        db: AsyncSession,
        proposal_id: str,
        user_id: str,
        *,
        reason: str | None = None,
    ) -> RejectionResult:
        target = await get_target(db, proposal_id)
        if target is None:
            auction_proposal = await get_proposal(db, proposal_id)
            if auction_proposal is None:
                raise ProposalNotFound(proposal_id=proposal_id)
            lost = await self.auctions.reject_proposal(db, auction_proposal.id, user_id, reason=reason)
            return RejectionResult(proposal=lost)

        listing = await require_listing(db, target.target_listing_id)
        if listing.owner_id != user_id:
            raise Forbidden(proposal_id=target.id)
        if target.status != "active":
            raise ProposalAlreadyResolved(proposal_id=target.id, status=target.status)

        try:
            rejected = await reject_target(db, target.id, reason=reason, actor_id=user_id)
        except TargetAlreadyResolved as e:
            raise ProposalAlreadyResolved(proposal_id=target.id, **e.details) from e
        await db.commit()

        await notify(self.notifications, "proposal.rejected", target.proposer_id, {
            "proposal_id": target.id,
            "listing_id": listing.id,
            "reason": reason,
        })
        return RejectionResult(proposal=rejected)
