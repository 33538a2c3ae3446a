from swapmarket.core.clock import as_utc
from swapmarket.models.auction import Auction, AuctionProposal
from swapmarket.models.settlement import SettlementRecord
from swapmarket.models.target import Target
from swapmarket.models.targeting_event import TargetingEvent
from swapmarket.schemas.auction import AuctionOut, AuctionProposalOut
from swapmarket.schemas.history import TargetingEventOut
from swapmarket.schemas.settlement import SettlementOut
from swapmarket.schemas.target import TargetOut


def target_out(t: Target) -> TargetOut:
    return TargetOut(
        id=t.id,
        source_listing_id=t.source_listing_id,
        target_listing_id=t.target_listing_id,
        proposer_id=t.proposer_id,
        status=t.status,
        proposal_type=t.proposal_type,
        message=t.message,
        conditions=list(t.conditions or []),
        cash_amount=t.cash_amount,
        cash_currency=t.cash_currency,
        resolution_reason=t.resolution_reason,
        created_at=as_utc(t.created_at),
        updated_at=as_utc(t.updated_at),
    )


def auction_out(a: Auction) -> AuctionOut:
    return AuctionOut(
        id=a.id,
        listing_id=a.listing_id,
        status=a.status,
        ends_at=as_utc(a.ends_at),
        ended_at=as_utc(a.ended_at),
        allow_booking_proposals=a.allow_booking_proposals,
        allow_cash_proposals=a.allow_cash_proposals,
        winning_proposal_id=a.winning_proposal_id,
    )


def auction_proposal_out(p: AuctionProposal) -> AuctionProposalOut:
    return AuctionProposalOut(
        id=p.id,
        auction_id=p.auction_id,
        proposer_id=p.proposer_id,
        proposal_type=p.proposal_type,
        booking_id=p.booking_id,
        cash_amount=p.cash_amount,
        cash_currency=p.cash_currency,
        message=p.message,
        status=p.status,
        created_at=as_utc(p.created_at),
    )


def proposal_out(p: Target | AuctionProposal) -> TargetOut | AuctionProposalOut:
    if isinstance(p, AuctionProposal):
        return auction_proposal_out(p)
    return target_out(p)


def settlement_out(r: SettlementRecord) -> SettlementOut:
    return SettlementOut(
        id=r.id,
        target_id=r.target_id,
        auction_proposal_id=r.auction_proposal_id,
        listing_id=r.listing_id,
        payer_id=r.payer_id,
        recipient_id=r.recipient_id,
        amount=r.amount,
        currency=r.currency,
        status=r.status,
        failed_stage=r.failed_stage,
        escrow_id=r.escrow_id,
        payment_transaction_id=r.payment_transaction_id,
        blockchain_transaction_id=r.blockchain_transaction_id,
        error_details=r.error_details or {},
        created_at=as_utc(r.created_at),
        completed_at=as_utc(r.completed_at),
    )


def event_out(e: TargetingEvent) -> TargetingEventOut:
    return TargetingEventOut(
        id=e.id,
        event_type=e.event_type,
        severity=e.severity,
        message=e.message,
        source_listing_id=e.source_listing_id,
        target_listing_id=e.target_listing_id,
        target_id=e.target_id,
        auction_id=e.auction_id,
        actor_id=e.actor_id,
        counterparty_id=e.counterparty_id,
        detail=e.detail or {},
        created_at=as_utc(e.created_at),
    )
