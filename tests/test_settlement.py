import pytest
from sqlalchemy import select, update

from swapmarket.errors import (
    CriticalRollbackFailure,
    GatewayUnavailable,
    InsufficientBalance,
    NetworkError,
    PaymentDeclined,
    ProposalAlreadyResolved,
    SettlementFailed,
    SettlementNotFound,
)
from swapmarket.models.listing import Listing
from swapmarket.models.settlement import SettlementRecord
from swapmarket.models.targeting_event import TargetingEvent
from swapmarket.services.settlement import SettlementSubject, get_settlement, list_settlements
from swapmarket.services.targets import AcceptanceSnapshot

from tests.fixtures_seed import reload_listing, reload_target, seed_cash_listing, seed_listing


async def _cash_offer(db, services, amount="120.00"):
    listing = await seed_cash_listing(db, "owner", minimum="100.00")
    offer = await services.targeting.propose_cash_offer(
        db, target_listing_id=listing.id, proposer_id="buyer",
        amount=amount, currency="EUR", payment_method_id="pm_1",
    )
    # ids only: a failed settlement rolls the session back and expires loaded rows
    return listing.id, offer.id


async def _booking_swap(db, services):
    wanted = await seed_listing(db, "owner")
    s1 = await seed_listing(db, "u1")
    s2 = await seed_listing(db, "u2")
    t1 = await services.targeting.propose_target(db, source_listing_id=s1.id, target_listing_id=wanted.id, proposer_id="u1")
    t2 = await services.targeting.propose_target(db, source_listing_id=s2.id, target_listing_id=wanted.id, proposer_id="u2")
    return wanted.id, s1.id, s2.id, t1.id, t2.id


async def _records_for(db, target_id):
    return (await db.execute(
        select(SettlementRecord)
        .where(SettlementRecord.target_id == target_id)
        .execution_options(populate_existing=True)
    )).scalars().all()


@pytest.mark.asyncio
async def test_escrow_outage_restores_the_offer(db_session, services, payments, blockchain, notifications, metrics):
    listing, offer = await _cash_offer(db_session, services)
    payments.fail_on["create_escrow"] = GatewayUnavailable()

    with pytest.raises(SettlementFailed) as exc:
        await services.acceptance.accept_proposal(db_session, offer, "owner")

    assert exc.value.stage == "payment"
    assert isinstance(exc.value.cause, GatewayUnavailable)
    assert exc.value.retryable is True

    [record] = await _records_for(db_session, offer)
    assert record.status == "failed"
    assert record.failed_stage == "payment"
    assert record.escrow_id is None
    assert record.error_details["payment_reversed"] is False

    assert (await reload_target(db_session, offer)).status == "active"
    assert (await reload_listing(db_session, listing)).status == "pending"
    assert blockchain.attempts == 0
    assert payments.called("refund_escrow") == 0

    assert [u for u, _ in notifications.of_type("settlement.failed")] == ["buyer"]
    assert metrics.counts["settlement.failed"] == 1

    failed_events = (await db_session.execute(
        select(TargetingEvent).where(TargetingEvent.event_type == "settlement_failed")
    )).scalars().all()
    assert len(failed_events) == 1
    assert failed_events[0].severity == "error"

    # the restored offer can be accepted once the provider is back
    del payments.fail_on["create_escrow"]
    result = await services.acceptance.accept_proposal(db_session, offer, "owner")
    assert result.settlement.status == "completed"
    assert len(await _records_for(db_session, offer)) == 2
    # each attempt gets its own escrow, keyed on its settlement
    escrow_refs = [kw["settlement_id"] for name, kw in payments.calls if name == "create_escrow"]
    assert escrow_refs == [exc.value.settlement_id, result.settlement.id]
    assert escrow_refs[0] != escrow_refs[1]


@pytest.mark.asyncio
async def test_declined_payment_is_not_retryable(db_session, services, payments):
    _, offer = await _cash_offer(db_session, services)
    payments.fail_on["create_escrow"] = PaymentDeclined("card declined")

    with pytest.raises(SettlementFailed) as exc:
        await services.acceptance.accept_proposal(db_session, offer, "owner")

    assert isinstance(exc.value.cause, PaymentDeclined)
    assert exc.value.retryable is False
    assert payments.called("create_escrow") == 1


@pytest.mark.asyncio
async def test_ledger_failure_after_payment_refunds(db_session, services, payments, blockchain):
    listing, offer = await _cash_offer(db_session, services)
    blockchain.errors = [InsufficientBalance()]

    with pytest.raises(SettlementFailed) as exc:
        await services.acceptance.accept_proposal(db_session, offer, "owner")

    assert exc.value.stage == "blockchain"
    assert exc.value.details["payment_reversed"] is True
    # insufficient balance is final, no retry
    assert blockchain.attempts == 1

    [record] = await _records_for(db_session, offer)
    assert record.status == "rolled_back"
    assert record.escrow_id == "esc_1"
    assert record.payment_transaction_id == "pay_2"
    assert record.error_details["payment_captured"] is True

    refunds = [kwargs for name, kwargs in payments.calls if name == "refund_escrow"]
    assert refunds == [{"escrow_id": "esc_1", "reason": "settlement failed at blockchain"}]
    assert (await reload_target(db_session, offer)).status == "active"
    assert (await reload_listing(db_session, listing)).status == "pending"


@pytest.mark.asyncio
async def test_failed_refund_requires_reconciliation(db_session, services, payments, blockchain, metrics):
    listing, offer = await _cash_offer(db_session, services)
    blockchain.errors = [InsufficientBalance()]
    payments.fail_on["refund_escrow"] = GatewayUnavailable()

    with pytest.raises(CriticalRollbackFailure):
        await services.acceptance.accept_proposal(db_session, offer, "owner")

    [record] = await _records_for(db_session, offer)
    assert record.status == "requires_reconciliation"
    assert record.failed_stage == "blockchain"
    assert record.error_details["escrow_id"] == "esc_1"

    critical = (await db_session.execute(
        select(TargetingEvent).where(TargetingEvent.severity == "critical")
    )).scalars().all()
    assert [e.event_type for e in critical] == ["settlement_reconciliation_required"]
    assert metrics.counts["settlement.reconciliation_required"] == 1
    # funds are unaccounted for, so the acceptance is left as is
    assert (await reload_listing(db_session, listing)).status == "accepted"


@pytest.mark.asyncio
async def test_ledger_retries_transient_errors(db_session, services, blockchain, sleeper):
    wanted, *_, t1, _ = await _booking_swap(db_session, services)
    blockchain.errors = [NetworkError(), NetworkError()]

    result = await services.acceptance.accept_proposal(db_session, t1, "owner")

    assert result.settlement.status == "completed"
    assert blockchain.attempts == 3
    assert len(sleeper.delays) == 2
    assert 1 <= sleeper.delays[0] <= 1 + 1 / 3
    assert 2 <= sleeper.delays[1] <= 2 + 2 / 3
    assert (await reload_listing(db_session, wanted)).status == "completed"


@pytest.mark.asyncio
async def test_exhausted_retries_restore_every_status(db_session, services, blockchain):
    wanted, s1, s2, t1, t2 = await _booking_swap(db_session, services)
    blockchain.errors = [NetworkError(), NetworkError(), NetworkError()]

    with pytest.raises(SettlementFailed) as exc:
        await services.acceptance.accept_proposal(db_session, t1, "owner")

    assert exc.value.stage == "blockchain"
    assert blockchain.attempts == 3

    [record] = await _records_for(db_session, t1)
    assert record.status == "failed"

    assert (await reload_listing(db_session, wanted)).status == "pending"
    assert (await reload_listing(db_session, s1)).status == "targeted"
    assert (await reload_listing(db_session, s2)).status == "targeted"
    assert (await reload_target(db_session, t1)).status == "active"
    restored = await reload_target(db_session, t2)
    assert restored.status == "active"
    assert restored.resolution_reason is None


@pytest.mark.asyncio
async def test_caller_deadline_bounds_the_ledger_call(db_session, services, blockchain, sleeper):
    _, _, _, t1, _ = await _booking_swap(db_session, services)
    blockchain.delay = 0.5

    with pytest.raises(SettlementFailed) as exc:
        await services.acceptance.accept_proposal(db_session, t1, "owner", deadline=0.2)

    assert exc.value.stage == "blockchain"
    assert exc.value.cause.code == "gateway_unavailable"
    # no time left for a backoff
    assert sleeper.delays == []
    assert (await reload_target(db_session, t1)).status == "active"


@pytest.mark.asyncio
async def test_notification_outage_does_not_fail_settlement(db_session, services, notifications):
    _, _, _, t1, _ = await _booking_swap(db_session, services)
    notifications.fail = RuntimeError("notification service down")

    result = await services.acceptance.accept_proposal(db_session, t1, "owner")

    assert result.settlement.status == "completed"
    # only the proposal.received events from before the outage got through
    assert {kind for kind, _, _ in notifications.events} == {"proposal.received"}
    assert notifications.of_type("proposal.accepted") == []
    assert notifications.of_type("settlement.completed") == []


@pytest.mark.asyncio
async def test_listing_changed_during_settlement_requires_reconciliation(db_session, session_factory, services, blockchain):
    wanted, _, _, t1, _ = await _booking_swap(db_session, services)

    async def cancel_listing(details):
        async with session_factory() as other:
            await other.execute(update(Listing).where(Listing.id == wanted).values(status="cancelled"))
            await other.commit()

    blockchain.before_record = cancel_listing

    with pytest.raises(CriticalRollbackFailure):
        await services.acceptance.accept_proposal(db_session, t1, "owner")

    [record] = await _records_for(db_session, t1)
    assert record.status == "requires_reconciliation"
    assert record.failed_stage == "finalize"
    assert record.blockchain_transaction_id == "0xtx1"


@pytest.mark.asyncio
async def test_settlement_runs_once_per_proposal(db_session, services):
    wanted, _, _, t1, _ = await _booking_swap(db_session, services)
    await services.acceptance.accept_proposal(db_session, t1, "owner")

    target = await reload_target(db_session, t1)
    listing = await reload_listing(db_session, wanted)
    with pytest.raises(ProposalAlreadyResolved):
        await services.settlement.settle(db_session, SettlementSubject.from_target(target, listing), AcceptanceSnapshot())
    await db_session.rollback()


@pytest.mark.asyncio
async def test_read_and_list_settlements(db_session, services):
    wanted, _, _, t1, _ = await _booking_swap(db_session, services)
    result = await services.acceptance.accept_proposal(db_session, t1, "owner")

    record = await get_settlement(db_session, result.settlement.id)
    assert record.payer_id == "u1"
    assert record.recipient_id == "owner"

    page = await list_settlements(db_session, listing_id=wanted)
    assert page.total == 1
    assert [r.id for r in page.items] == [record.id]
    assert (await list_settlements(db_session, status="failed")).total == 0

    with pytest.raises(SettlementNotFound):
        await get_settlement(db_session, "stl_missing")
