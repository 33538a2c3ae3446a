from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.errors import InvalidRequest, SwapError
from swapmarket.gateways.base import NotificationGateway
from swapmarket.gateways.notifications import notify
from swapmarket.models.target import Target
from swapmarket.services import targets as repo
from swapmarket.services.listing_store import require_listing
from swapmarket.services.targeting_history import HistoryFilters, Page, get_targeting_history


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    code: str | None = None
    message: str | None = None


def _clean_conditions(conditions: list[str] | None) -> list[str]:
    cleaned = [c.strip() for c in (conditions or []) if c and c.strip()]
    if len(cleaned) > 20:
        raise InvalidRequest("At most 20 conditions are allowed", count=len(cleaned))
    return cleaned


class TargetingService:
    """Propose / retarget / remove, plus the read side of the targeting log."""

    def __init__(self, *, notifications: NotificationGateway):
        self.notifications = notifications

    async def check_eligibility(
        self,
        db: AsyncSession,
        *,
        source_listing_id: str,
        target_listing_id: str,
        user_id: str,
        now: datetime | None = None,
    ) -> Eligibility:
        try:
            await repo.validate_new_target(
                db,
                source_listing_id=source_listing_id,
                target_listing_id=target_listing_id,
                proposer_id=user_id,
                now=now,
            )
        except SwapError as e:
            return Eligibility(eligible=False, code=e.code, message=e.message)
        return Eligibility(eligible=True)

    async def propose_target(
        self,
        db: AsyncSession,
        *,
        source_listing_id: str,
        target_listing_id: str,
        proposer_id: str,
        message: str | None = None,
        conditions: list[str] | None = None,
    ) -> Target:
        target = await repo.create_target(
            db,
            source_listing_id=source_listing_id,
            target_listing_id=target_listing_id,
            proposer_id=proposer_id,
            message=message,
            conditions=_clean_conditions(conditions),
        )
        await db.commit()
        log.info("target %s created %s -> %s", target.id, source_listing_id, target_listing_id)

        await self._notify_owner(db, target)
        return target

    async def propose_cash_offer(
        self,
        db: AsyncSession,
        *,
        target_listing_id: str,
        proposer_id: str,
        amount: Any,
        currency: str,
        payment_method_id: str,
        message: str | None = None,
        conditions: list[str] | None = None,
    ) -> Target:
        target = await repo.create_cash_target(
            db,
            target_listing_id=target_listing_id,
            proposer_id=proposer_id,
            amount=amount,
            currency=currency,
            payment_method_id=payment_method_id,
            message=message,
            conditions=_clean_conditions(conditions),
        )
        await db.commit()
        log.info("cash offer %s created on %s", target.id, target_listing_id)

        await self._notify_owner(db, target)
        return target

    async def retarget(
        self,
        db: AsyncSession,
        *,
        source_listing_id: str,
        new_target_listing_id: str,
        proposer_id: str,
        message: str | None = None,
        conditions: list[str] | None = None,
    ) -> Target:
        target = await repo.retarget(
            db,
            source_listing_id=source_listing_id,
            new_target_listing_id=new_target_listing_id,
            proposer_id=proposer_id,
            message=message,
            conditions=_clean_conditions(conditions),
        )
        await db.commit()
        log.info("listing %s retargeted to %s (target %s)", source_listing_id, new_target_listing_id, target.id)

        await self._notify_owner(db, target)
        return target

    async def remove_target(self, db: AsyncSession, *, source_listing_id: str, proposer_id: str) -> Target:
        target = await repo.remove_target(db, source_listing_id=source_listing_id, proposer_id=proposer_id)
        await db.commit()
        return target

    async def get_targeting_history(
        self,
        db: AsyncSession,
        filters: HistoryFilters,
        *,
        limit: int = 50,
        offset: int = 0,
        order: str = "desc",
    ) -> Page:
        return await get_targeting_history(
            db, filters, limit=limit, offset=offset, order=order,
        )

    async def _notify_owner(self, db: AsyncSession, target: Target) -> None:
        listing = await require_listing(db, target.target_listing_id)
        await notify(self.notifications, "proposal.received", listing.owner_id, {
            "proposal_id": target.id,
            "listing_id": listing.id,
            "proposal_type": target.proposal_type,
            "source_listing_id": target.source_listing_id,
        })
