from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.api.deps import get_services, get_user_id
from swapmarket.api.v1.serializers import auction_out, proposal_out, settlement_out, target_out
from swapmarket.core.db import get_db
from swapmarket.schemas.proposal import AcceptanceOut, AcceptRequest, RejectionOut, RejectRequest
from swapmarket.wiring import Services

router = APIRouter()


@router.post("/proposals/{proposal_id}/accept", response_model=AcceptanceOut)
async def accept_proposal(
    proposal_id: str,
    payload: AcceptRequest | None = None,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> AcceptanceOut:
    result = await services.acceptance.accept_proposal(
        db, proposal_id, user_id, deadline=payload.deadline_seconds if payload else None,
    )
    return AcceptanceOut(
        proposal=proposal_out(result.proposal),
        settlement=settlement_out(result.settlement),
        rejected=[target_out(t) for t in result.rejected],
        auction=auction_out(result.auction) if result.auction is not None else None,
    )


@router.post("/proposals/{proposal_id}/reject", response_model=RejectionOut)
async def reject_proposal(
    proposal_id: str,
    payload: RejectRequest | None = None,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> RejectionOut:
    result = await services.acceptance.reject_proposal(db, proposal_id, user_id, reason=payload.reason if payload else None)
    return RejectionOut(proposal=proposal_out(result.proposal))
