"""
Settlement saga run after a proposal is accepted.

Stages run strictly in order: payment (cash proposals only), blockchain
recording, finalize. The SettlementRecord is committed before the first
gateway call and after every stage, so a crash at any point leaves an
auditable row behind. Failures compensate (refund, restore pre-accept
statuses) before the error reaches the caller; a compensation that cannot
complete parks the record in requires_reconciliation for an operator.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable

from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from swapmarket.core.clock import utcnow
from swapmarket.core.config import settings
from swapmarket.core.telemetry import MetricsSink, NullMetricsSink
from swapmarket.errors import (
    CriticalRollbackFailure,
    GatewayError,
    GatewayUnavailable,
    InvalidRequest,
    ProposalAlreadyResolved,
    SettlementFailed,
    SettlementNotFound,
    SwapError,
)
from swapmarket.gateways.base import BlockchainGateway, NotificationGateway, PaymentGateway, SettlementDetails
from swapmarket.gateways.notifications import notify
from swapmarket.models.auction import Auction, AuctionProposal
from swapmarket.models.listing import Listing
from swapmarket.models.settlement import SETTLEMENT_STATUSES, SettlementRecord
from swapmarket.models.target import Target
from swapmarket.services.listing_store import transition_status
from swapmarket.services.retry import compute_backoff_seconds
from swapmarket.services.targeting_history import Page, record_event
from swapmarket.services.targets import AcceptanceSnapshot, restore_acceptance, retire_consumed_listing


log = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class SettlementSubject:
    """The accepted proposal, flattened to what the saga needs."""

    listing_id: str
    payer_id: str
    recipient_id: str
    proposal_type: str
    target_id: str | None = None
    auction_proposal_id: str | None = None
    auction_id: str | None = None
    source_listing_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    payment_method_id: str | None = None

    @property
    def is_cash(self) -> bool:
        return self.proposal_type == "cash"

    @property
    def listing_ids(self) -> list[str]:
        return [i for i in (self.listing_id, self.source_listing_id) if i]

    @classmethod
    def from_target(cls, target: Target, listing: Listing) -> "SettlementSubject":
        return cls(
            listing_id=listing.id,
            payer_id=target.proposer_id,
            recipient_id=listing.owner_id,
            proposal_type=target.proposal_type,
            target_id=target.id,
            source_listing_id=target.source_listing_id,
            amount=target.cash_amount,
            currency=target.cash_currency,
            payment_method_id=target.payment_method_id,
        )

    @classmethod
    def from_auction_proposal(cls, proposal: AuctionProposal, auction: Auction, listing: Listing) -> "SettlementSubject":
        return cls(
            listing_id=listing.id,
            payer_id=proposal.proposer_id,
            recipient_id=listing.owner_id,
            proposal_type=proposal.proposal_type,
            auction_proposal_id=proposal.id,
            auction_id=auction.id,
            amount=proposal.cash_amount,
            currency=proposal.cash_currency,
            payment_method_id=proposal.payment_method_id,
        )


@dataclass(frozen=True)
class SettlementTimeouts:
    payment: float = settings.payment_timeout_seconds
    blockchain: float = settings.blockchain_timeout_seconds
    blockchain_max_attempts: int = settings.blockchain_max_attempts
    backoff_base: float = settings.blockchain_backoff_base_seconds
    backoff_cap: float = settings.blockchain_backoff_cap_seconds


class _Deadline:
    """Caller budget in seconds, turned into per-call timeouts."""

    def __init__(self, seconds: float | None):
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._expires = loop.time() + seconds if seconds is not None else None

    def remaining(self) -> float | None:
        if self._expires is None:
            return None
        return self._expires - self._loop.time()

    def budget(self, step_timeout: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return step_timeout
        if remaining <= 0:
            raise GatewayUnavailable("Deadline exceeded before gateway call")
        return min(step_timeout, remaining)


class SettlementCoordinator:
    def __init__(
        self,
        *,
        payments: PaymentGateway,
        blockchain: BlockchainGateway,
        notifications: NotificationGateway,
        metrics: MetricsSink | None = None,
        timeouts: SettlementTimeouts | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.payments = payments
        self.blockchain = blockchain
        self.notifications = notifications
        self.metrics = metrics or NullMetricsSink()
        self.timeouts = timeouts or SettlementTimeouts()
        self._sleep = sleep

    async def settle(
        self,
        db: AsyncSession,
        subject: SettlementSubject,
        snapshot: AcceptanceSnapshot,
        *,
        deadline: float | None = None,
    ) -> SettlementRecord:
        """
        Commit the caller's acceptance together with an initiated record,
        then drive the saga. Returns the completed record or raises
        SettlementFailed / CriticalRollbackFailure.
        """
        clock = _Deadline(deadline)
        record = await self._begin(db, subject, snapshot)
        log.info("settlement %s started listing=%s type=%s", record.id, subject.listing_id, subject.proposal_type)

        escrow_id: str | None = None
        payment_txn_id: str | None = None

        if subject.is_cash:
            with tracer.start_as_current_span("settlement.payment", attributes={"settlement.id": record.id}):
                try:
                    escrow = await self._call(
                        lambda: self.payments.create_escrow(
                            settlement_id=record.id,
                            amount=subject.amount,
                            currency=subject.currency,
                            payer_id=subject.payer_id,
                            recipient_id=subject.recipient_id,
                            listing_ref=subject.listing_id,
                            payment_method_id=subject.payment_method_id,
                        ),
                        self.timeouts.payment,
                        clock,
                    )
                    escrow_id = escrow.escrow_id
                    await self._update(db, record.id, escrow_id=escrow_id)

                    txn = await self._call(
                        lambda: self.payments.release_escrow(
                            escrow_id=escrow_id,
                            recipient_id=subject.recipient_id,
                            amount=subject.amount,
                        ),
                        self.timeouts.payment,
                        clock,
                    )
                    payment_txn_id = txn.transaction_id
                    await self._update(db, record.id, payment_transaction_id=payment_txn_id)
                except GatewayError as e:
                    await self._compensate(
                        db, record.id, subject, snapshot,
                        stage="payment", cause=e, escrow_id=escrow_id, payment_captured=False,
                    )

        details = SettlementDetails(
            settlement_id=record.id,
            listing_id=subject.listing_id,
            payer_id=subject.payer_id,
            recipient_id=subject.recipient_id,
            proposal_type=subject.proposal_type,
            target_id=subject.target_id,
            auction_proposal_id=subject.auction_proposal_id,
            source_listing_id=subject.source_listing_id,
            amount=subject.amount,
            currency=subject.currency,
            payment_transaction_id=payment_txn_id,
        )
        with tracer.start_as_current_span("settlement.blockchain", attributes={"settlement.id": record.id}):
            try:
                chain_txn_id = await self._record_on_chain(details, clock)
            except GatewayError as e:
                await self._compensate(
                    db, record.id, subject, snapshot,
                    stage="blockchain", cause=e, escrow_id=escrow_id, payment_captured=payment_txn_id is not None,
                )
            await self._update(db, record.id, blockchain_transaction_id=chain_txn_id)

        with tracer.start_as_current_span("settlement.finalize", attributes={"settlement.id": record.id}):
            await self._finalize(db, record.id, subject)

        self.metrics.increment("settlement.completed", proposal_type=subject.proposal_type)
        log.info("settlement %s completed chain_txn=%s", record.id, chain_txn_id)

        await self._notify_completed(record.id, subject, payment_txn_id, chain_txn_id)
        return await get_settlement(db, record.id)

    # --- stages --------------------------------------------------------------

    async def _begin(self, db: AsyncSession, subject: SettlementSubject, snapshot: AcceptanceSnapshot) -> SettlementRecord:
        record = SettlementRecord(
            target_id=subject.target_id,
            auction_proposal_id=subject.auction_proposal_id,
            listing_id=subject.listing_id,
            payer_id=subject.payer_id,
            recipient_id=subject.recipient_id,
            amount=subject.amount if subject.is_cash else None,
            currency=subject.currency if subject.is_cash else None,
            status="initiated",
            compensation=snapshot.to_dict(),
        )
        db.add(record)
        try:
            await db.flush()
        except IntegrityError as e:
            # a live settlement already exists for this proposal
            await db.rollback()
            raise ProposalAlreadyResolved(
                target_id=subject.target_id,
                auction_proposal_id=subject.auction_proposal_id,
            ) from e
        await db.commit()
        return record

    async def _call(self, factory: Callable[[], Awaitable[Any]], step_timeout: float, clock: _Deadline | None) -> Any:
        budget = clock.budget(step_timeout) if clock is not None else step_timeout
        try:
            return await asyncio.wait_for(factory(), timeout=budget)
        except asyncio.TimeoutError as e:
            raise GatewayUnavailable("Gateway call timed out", timeout_seconds=round(budget, 3)) from e
        except SwapError:
            raise
        except Exception as e:
            log.exception("unexpected gateway failure")
            raise GatewayUnavailable(f"{type(e).__name__}: {e}") from e

    async def _record_on_chain(self, details: SettlementDetails, clock: _Deadline) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._call(lambda: self.blockchain.record_settlement(details), self.timeouts.blockchain, clock)
            except GatewayError as e:
                if not e.retryable or attempt >= self.timeouts.blockchain_max_attempts:
                    raise
                delay = compute_backoff_seconds(attempt, self.timeouts.backoff_base, self.timeouts.backoff_cap)
                remaining = clock.remaining()
                if remaining is not None and delay >= remaining:
                    raise
                log.warning(
                    "blockchain record for %s failed (attempt %s/%s): %s; retrying in %.2fs",
                    details.settlement_id, attempt, self.timeouts.blockchain_max_attempts, e.code, delay,
                )
                await self._sleep(delay)

    async def _finalize(self, db: AsyncSession, record_id: str, subject: SettlementSubject) -> None:
        try:
            for listing_id in subject.listing_ids:
                if not await transition_status(db, listing_id, from_statuses=("accepted",), to_status="completed"):
                    raise _FinalizeConflict(f"listing {listing_id} left the accepted state during settlement")

            for listing_id in subject.listing_ids:
                await retire_consumed_listing(db, listing_id, keep_target_id=subject.target_id)

            result = await db.execute(
                update(SettlementRecord)
                .where(SettlementRecord.id == record_id, SettlementRecord.status == "initiated")
                .values(status="completed", completed_at=utcnow())
            )
            if int(result.rowcount or 0) != 1:
                raise _FinalizeConflict(f"settlement {record_id} is no longer initiated")

            await record_event(
                db,
                event_type="completed",
                message=f"Swap on {subject.listing_id} settled",
                source_listing_id=subject.source_listing_id,
                target_listing_id=subject.listing_id,
                target_id=subject.target_id,
                auction_id=subject.auction_id,
                actor_id=subject.recipient_id,
                counterparty_id=subject.payer_id,
                detail={"settlement_id": record_id},
            )
            await db.commit()
        except (SQLAlchemyError, _FinalizeConflict) as e:
            # ledger and funds are already committed; nothing left to undo automatically
            await self._require_reconciliation(db, record_id, subject, stage="finalize", reason=str(e), cause=e)

    # --- failure paths -------------------------------------------------------

    async def _compensate(
        self,
        db: AsyncSession,
        record_id: str,
        subject: SettlementSubject,
        snapshot: AcceptanceSnapshot,
        *,
        stage: str,
        cause: GatewayError,
        escrow_id: str | None,
        payment_captured: bool,
    ) -> None:
        log.warning("settlement %s failed at %s: %s (%s)", record_id, stage, cause.code, cause.message)

        refunded = False
        if escrow_id:
            try:
                await self._call(
                    lambda: self.payments.refund_escrow(escrow_id=escrow_id, reason=f"settlement failed at {stage}"),
                    self.timeouts.payment,
                    None,
                )
                refunded = True
            except GatewayError as refund_error:
                await self._require_reconciliation(
                    db, record_id, subject,
                    stage=stage,
                    reason=f"refund of escrow {escrow_id} failed: {refund_error.code}",
                    cause=cause,
                    extra={"escrow_id": escrow_id, "refund_error": refund_error.to_dict()},
                )

        status = "rolled_back" if payment_captured else "failed"
        error_details = {
            "stage": stage,
            "error": cause.to_dict(),
            "retryable": cause.retryable,
            "payment_captured": payment_captured,
            "payment_reversed": refunded,
        }
        try:
            await db.rollback()
            await self._set_status(db, record_id, status=status, failed_stage=stage, error_details=error_details)
            skipped = await restore_acceptance(db, snapshot)
            if skipped:
                log.warning(
                    "settlement %s: %s status changes could not be restored: %s",
                    record_id, len(skipped), [(c.kind, c.id) for c in skipped],
                )
            await record_event(
                db,
                event_type="settlement_failed",
                severity="error",
                message=f"Settlement {record_id} failed at {stage}: {cause.message}",
                source_listing_id=subject.source_listing_id,
                target_listing_id=subject.listing_id,
                target_id=subject.target_id,
                auction_id=subject.auction_id,
                counterparty_id=subject.payer_id,
                detail={"settlement_id": record_id, **error_details},
            )
            await db.commit()
        except SQLAlchemyError as e:
            await self._require_reconciliation(
                db, record_id, subject, stage=stage, reason=f"restoring statuses failed: {e}", cause=cause,
            )

        self.metrics.increment("settlement.failed", stage=stage, proposal_type=subject.proposal_type)
        await notify(self.notifications, "settlement.failed", subject.payer_id, {
            "settlement_id": record_id,
            "listing_id": subject.listing_id,
            "stage": stage,
        })
        raise SettlementFailed(stage, cause=cause, settlement_id=record_id, payment_reversed=refunded) from cause

    async def _require_reconciliation(
        self,
        db: AsyncSession,
        record_id: str,
        subject: SettlementSubject,
        *,
        stage: str,
        reason: str,
        cause: Exception | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        log.critical(
            "settlement %s requires manual reconciliation: stage=%s listing=%s reason=%s",
            record_id, stage, subject.listing_id, reason,
        )
        error_details = {"stage": stage, "reason": reason, **(extra or {})}
        if isinstance(cause, SwapError):
            error_details["error"] = cause.to_dict()
        try:
            await db.rollback()
            await self._set_status(
                db, record_id, status="requires_reconciliation", failed_stage=stage, error_details=error_details,
            )
            await record_event(
                db,
                event_type="settlement_reconciliation_required",
                severity="critical",
                message=f"Settlement {record_id} requires manual reconciliation ({stage}): {reason}",
                source_listing_id=subject.source_listing_id,
                target_listing_id=subject.listing_id,
                target_id=subject.target_id,
                auction_id=subject.auction_id,
                counterparty_id=subject.payer_id,
                detail={"settlement_id": record_id, **error_details},
            )
            await db.commit()
        except SQLAlchemyError:
            log.exception("could not persist reconciliation state for settlement %s", record_id)

        self.metrics.increment("settlement.reconciliation_required", stage=stage)
        raise CriticalRollbackFailure(settlement_id=record_id, stage=stage, listing_id=subject.listing_id) from cause

    # --- helpers -------------------------------------------------------------

    async def _update(self, db: AsyncSession, record_id: str, **values: Any) -> None:
        # progress marker, committed before the next gateway call
        await db.execute(
            update(SettlementRecord)
            .where(SettlementRecord.id == record_id, SettlementRecord.status == "initiated")
            .values(**values)
        )
        await db.commit()

    async def _set_status(self, db: AsyncSession, record_id: str, **values: Any) -> None:
        await db.execute(
            update(SettlementRecord)
            .where(SettlementRecord.id == record_id, SettlementRecord.status == "initiated")
            .values(**values)
        )

    async def _notify_completed(
        self,
        record_id: str,
        subject: SettlementSubject,
        payment_txn_id: str | None,
        chain_txn_id: str,
    ) -> None:
        payload = {
            "settlement_id": record_id,
            "listing_id": subject.listing_id,
            "target_id": subject.target_id,
            "auction_proposal_id": subject.auction_proposal_id,
            "payment_transaction_id": payment_txn_id,
            "blockchain_transaction_id": chain_txn_id,
        }
        await notify(self.notifications, "proposal.accepted", subject.payer_id, payload)
        await notify(self.notifications, "settlement.completed", subject.recipient_id, payload)


class _FinalizeConflict(Exception):
    pass


async def get_settlement(db: AsyncSession, record_id: str) -> SettlementRecord:
    record = (await db.execute(
        select(SettlementRecord)
        .where(SettlementRecord.id == record_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if record is None:
        raise SettlementNotFound(settlement_id=record_id)
    return record


async def list_settlements(
    db: AsyncSession,
    *,
    status: str | None = None,
    listing_id: str | None = None,
    created_after: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> Page:
    if status is not None and status not in SETTLEMENT_STATUSES:
        raise InvalidRequest("Unknown settlement status", status=status)
    if limit < 1 or limit > settings.history_page_max_limit:
        raise InvalidRequest(f"limit must be between 1 and {settings.history_page_max_limit}", limit=limit)
    if offset < 0:
        raise InvalidRequest("offset cannot be negative", offset=offset)

    conditions = []
    if status:
        conditions.append(SettlementRecord.status == status)
    if listing_id:
        conditions.append(SettlementRecord.listing_id == listing_id)
    if created_after:
        conditions.append(SettlementRecord.created_at >= created_after)

    total = int((await db.execute(
        select(func.count()).select_from(SettlementRecord).where(*conditions)
    )).scalar_one())
    rows = (await db.execute(
        select(SettlementRecord)
        .where(*conditions)
        .order_by(SettlementRecord.created_at.desc(), SettlementRecord.id.desc())
        .limit(limit)
        .offset(offset)
    )).scalars().all()
    return Page(items=list(rows), total=total, limit=limit, offset=offset)
