from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.api.deps import get_services, get_user_id
from swapmarket.api.v1.serializers import auction_out, auction_proposal_out, settlement_out
from swapmarket.core.db import get_db
from swapmarket.errors import Forbidden
from swapmarket.schemas.auction import (
    AuctionOut,
    AuctionProposalCreate,
    AuctionProposalOut,
    WinnerRequest,
    WinnerSelectionOut,
)
from swapmarket.services.auctions import ProposalPayload
from swapmarket.services.listing_store import require_listing
from swapmarket.wiring import Services

router = APIRouter()


@router.get("/auctions/{auction_id}", response_model=AuctionOut)
async def get_auction(
    auction_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> AuctionOut:
    auction = await services.auctions.get_auction(db, auction_id)
    return auction_out(auction)


@router.get("/auctions/{auction_id}/proposals", response_model=list[AuctionProposalOut])
async def list_auction_proposals(
    auction_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> list[AuctionProposalOut]:
    auction = await services.auctions.get_auction(db, auction_id)
    listing = await require_listing(db, auction.listing_id)
    if listing.owner_id != user_id:
        raise Forbidden("Only the listing owner can view auction proposals", auction_id=auction.id)
    return [auction_proposal_out(p) for p in await services.auctions.list_proposals(db, auction.id)]


@router.post("/auctions/{auction_id}/proposals", response_model=AuctionProposalOut, status_code=201)
async def submit_auction_proposal(
    auction_id: str,
    payload: AuctionProposalCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> AuctionProposalOut:
    proposal = await services.auctions.submit_proposal(
        db,
        auction_id,
        user_id,
        ProposalPayload(
            proposal_type=payload.proposal_type,
            booking_id=payload.booking_id,
            cash_amount=payload.cash_amount,
            cash_currency=payload.cash_currency,
            payment_method_id=payload.payment_method_id,
            message=payload.message,
        ),
    )
    return auction_proposal_out(proposal)


@router.post("/auctions/{auction_id}/proposals/{proposal_id}/withdraw", response_model=AuctionProposalOut)
async def withdraw_auction_proposal(
    auction_id: str,
    proposal_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> AuctionProposalOut:
    proposal = await services.auctions.withdraw_proposal(db, proposal_id, user_id, auction_id=auction_id)
    return auction_proposal_out(proposal)


@router.post("/auctions/{auction_id}/winner", response_model=WinnerSelectionOut)
async def select_auction_winner(
    auction_id: str,
    payload: WinnerRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> WinnerSelectionOut:
    result = await services.auctions.select_winner(
        db, auction_id, payload.proposal_id, user_id, deadline=payload.deadline_seconds,
    )
    return WinnerSelectionOut(
        auction=auction_out(result.auction),
        winning_proposal=auction_proposal_out(result.winning_proposal),
        settlement=settlement_out(result.settlement),
    )
