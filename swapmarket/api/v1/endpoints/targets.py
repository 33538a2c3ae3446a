from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.api.deps import get_services, get_user_id
from swapmarket.api.v1.serializers import target_out
from swapmarket.core.db import get_db
from swapmarket.schemas.target import CashOfferCreate, EligibilityOut, RetargetRequest, TargetCreate, TargetOut
from swapmarket.wiring import Services

router = APIRouter()


@router.post("/listings/{listing_id}/target", response_model=TargetOut, status_code=201)
async def propose_target(
    listing_id: str,
    payload: TargetCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> TargetOut:
    target = await services.targeting.propose_target(
        db,
        source_listing_id=listing_id,
        target_listing_id=payload.target_listing_id,
        proposer_id=user_id,
        message=payload.message,
        conditions=payload.conditions,
    )
    return target_out(target)


@router.get("/listings/{listing_id}/target/eligibility", response_model=EligibilityOut)
async def target_eligibility(
    listing_id: str,
    target_listing_id: str = Query(min_length=1),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> EligibilityOut:
    result = await services.targeting.check_eligibility(
        db,
        source_listing_id=listing_id,
        target_listing_id=target_listing_id,
        user_id=user_id,
    )
    return EligibilityOut(eligible=result.eligible, code=result.code, message=result.message)


@router.post("/listings/{listing_id}/retarget", response_model=TargetOut)
async def retarget(
    listing_id: str,
    payload: RetargetRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> TargetOut:
    target = await services.targeting.retarget(
        db,
        source_listing_id=listing_id,
        new_target_listing_id=payload.new_target_listing_id,
        proposer_id=user_id,
        message=payload.message,
        conditions=payload.conditions,
    )
    return target_out(target)


@router.delete("/listings/{listing_id}/target", response_model=TargetOut)
async def remove_target(
    listing_id: str,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> TargetOut:
    target = await services.targeting.remove_target(db, source_listing_id=listing_id, proposer_id=user_id)
    return target_out(target)


@router.post("/listings/{listing_id}/cash-offers", response_model=TargetOut, status_code=201)
async def propose_cash_offer(
    listing_id: str,
    payload: CashOfferCreate,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> TargetOut:
    target = await services.targeting.propose_cash_offer(
        db,
        target_listing_id=listing_id,
        proposer_id=user_id,
        amount=payload.amount,
        currency=payload.currency,
        payment_method_id=payload.payment_method_id,
        message=payload.message,
        conditions=payload.conditions,
    )
    return target_out(target)
