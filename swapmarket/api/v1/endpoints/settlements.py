from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.api.deps import get_user_id
from swapmarket.api.v1.serializers import settlement_out
from swapmarket.core.db import get_db
from swapmarket.errors import SettlementNotFound
from swapmarket.schemas.settlement import SettlementOut
from swapmarket.services.settlement import get_settlement

router = APIRouter()


@router.get("/settlements/{settlement_id}", response_model=SettlementOut)
async def read_settlement(
    settlement_id: str,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
) -> SettlementOut:
    record = await get_settlement(db, settlement_id)
    if user_id not in (record.payer_id, record.recipient_id):
        # visible to the two parties only
        raise SettlementNotFound(settlement_id=settlement_id)
    return settlement_out(record)
