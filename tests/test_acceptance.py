import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from swapmarket.core.clock import utcnow
from swapmarket.errors import (
    CannotAcceptOwnProposal,
    Forbidden,
    ListingExpired,
    ListingNoLongerAvailable,
    ProposalAlreadyResolved,
    ProposalNotFound,
)
from swapmarket.models.targeting_event import TargetingEvent
from swapmarket.services.acceptance import AcceptanceResult
from swapmarket.services.listing_store import require_listing
from swapmarket.services.targets import get_target

from tests.conftest import is_postgres
from tests.fixtures_seed import reload_listing, reload_target, seed_cash_listing, seed_listing


async def _two_proposals(db, services):
    wanted = await seed_listing(db, "owner")
    s1 = await seed_listing(db, "u1")
    s2 = await seed_listing(db, "u2")
    t1 = await services.targeting.propose_target(db, source_listing_id=s1.id, target_listing_id=wanted.id, proposer_id="u1")
    t2 = await services.targeting.propose_target(db, source_listing_id=s2.id, target_listing_id=wanted.id, proposer_id="u2")
    return wanted, s1, s2, t1, t2


@pytest.mark.asyncio
async def test_accept_settles_and_rejects_competitors(db_session, services, blockchain, payments, notifications):
    wanted, s1, s2, t1, t2 = await _two_proposals(db_session, services)
    assert (await reload_listing(db_session, wanted.id)).status == "pending"

    result = await services.acceptance.accept_proposal(db_session, t1.id, "owner")

    assert result.proposal.id == t1.id
    assert result.proposal.status == "accepted"
    assert [t.id for t in result.rejected] == [t2.id]
    assert result.rejected[0].status == "rejected"
    assert result.settlement.status == "completed"
    assert result.settlement.blockchain_transaction_id == "0xtx1"
    assert result.settlement.completed_at is not None

    assert (await reload_listing(db_session, wanted.id)).status == "completed"
    assert (await reload_listing(db_session, s1.id)).status == "completed"
    # the losing proposer's listing is free again
    assert (await reload_listing(db_session, s2.id)).status == "pending"
    assert (await reload_target(db_session, t2.id)).resolution_reason == "another proposal was accepted"

    assert payments.calls == []
    assert len(blockchain.recorded) == 1
    assert blockchain.recorded[0].target_id == t1.id

    assert [u for u, _ in notifications.of_type("proposal.accepted")] == ["u1"]
    assert [u for u, _ in notifications.of_type("settlement.completed")] == ["owner"]
    assert [u for u, _ in notifications.of_type("proposal.rejected")] == ["u2"]

    kinds = (await db_session.execute(
        select(TargetingEvent.event_type).where(TargetingEvent.target_listing_id == wanted.id)
    )).scalars().all()
    assert sorted(kinds) == ["accepted", "completed", "rejected", "targeted", "targeted"]


@pytest.mark.asyncio
async def test_accept_cash_offer_moves_money(db_session, services, payments):
    listing = await seed_cash_listing(db_session, "owner", minimum="50.00")
    offer = await services.targeting.propose_cash_offer(
        db_session, target_listing_id=listing.id, proposer_id="buyer",
        amount="75.00", currency="EUR", payment_method_id="pm_1",
    )

    result = await services.acceptance.accept_proposal(db_session, offer.id, "owner")

    assert result.settlement.status == "completed"
    assert result.settlement.amount == Decimal("75.00")
    assert result.settlement.escrow_id == "esc_1"
    assert result.settlement.payment_transaction_id == "pay_2"
    assert [name for name, _ in payments.calls] == ["create_escrow", "release_escrow"]
    assert payments.calls[0][1]["payer_id"] == "buyer"
    assert payments.calls[0][1]["recipient_id"] == "owner"
    assert (await reload_listing(db_session, listing.id)).status == "completed"


@pytest.mark.asyncio
async def test_stale_accept_loses_to_committed_accept(session_factory, services, metrics):
    async with session_factory() as db:
        wanted, _, _, t1, t2 = await _two_proposals(db, services)

    async with session_factory() as winner_db, session_factory() as loser_db:
        # the loser has already read an available listing and an active target;
        # holding the rows keeps them in its identity map
        stale_target = await get_target(loser_db, t2.id)
        stale_listing = await require_listing(loser_db, wanted.id)
        assert (stale_target.status, stale_listing.status) == ("active", "pending")

        await services.acceptance.accept_proposal(winner_db, t1.id, "owner")

        with pytest.raises(ProposalAlreadyResolved):
            await services.acceptance.accept_proposal(loser_db, t2.id, "owner")
        await loser_db.rollback()

    assert metrics.counts["acceptance.race_lost"] == 1
    async with session_factory() as db:
        assert (await reload_target(db, t1.id)).status == "accepted"
        assert (await reload_target(db, t2.id)).status == "rejected"
        assert (await reload_listing(db, wanted.id)).status == "completed"


@pytest.mark.skipif(not is_postgres(), reason="needs row-level locking")
@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(session_factory, services, blockchain):
    async with session_factory() as db:
        wanted, _, _, t1, t2 = await _two_proposals(db, services)

    async def attempt(target_id):
        async with session_factory() as db:
            try:
                return await services.acceptance.accept_proposal(db, target_id, "owner")
            except ProposalAlreadyResolved as e:
                return e

    results = await asyncio.gather(attempt(t1.id), attempt(t2.id))

    winners = [r for r in results if isinstance(r, AcceptanceResult)]
    losers = [r for r in results if isinstance(r, ProposalAlreadyResolved)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert len(blockchain.recorded) == 1


@pytest.mark.asyncio
async def test_accept_guards(db_session, services):
    wanted, _, _, t1, _ = await _two_proposals(db_session, services)

    with pytest.raises(CannotAcceptOwnProposal):
        await services.acceptance.accept_proposal(db_session, t1.id, "u1")
    with pytest.raises(Forbidden):
        await services.acceptance.accept_proposal(db_session, t1.id, "stranger")
    with pytest.raises(ProposalNotFound):
        await services.acceptance.accept_proposal(db_session, "tgt_missing", "owner")


@pytest.mark.asyncio
async def test_accept_twice(db_session, services):
    _, _, _, t1, _ = await _two_proposals(db_session, services)

    await services.acceptance.accept_proposal(db_session, t1.id, "owner")
    with pytest.raises(ProposalAlreadyResolved):
        await services.acceptance.accept_proposal(db_session, t1.id, "owner")


@pytest.mark.asyncio
async def test_accept_on_expired_listing(db_session, services, blockchain):
    wanted = await seed_listing(db_session, "owner", expires_at=utcnow() + timedelta(days=1))
    source = await seed_listing(db_session, "u1")
    target = await services.targeting.propose_target(
        db_session, source_listing_id=source.id, target_listing_id=wanted.id, proposer_id="u1",
    )

    with pytest.raises(ListingExpired):
        await services.acceptance.accept_proposal(db_session, target.id, "owner", now=utcnow() + timedelta(days=2))
    assert blockchain.attempts == 0


@pytest.mark.asyncio
async def test_expired_source_listing_leaves_nothing_accepted(db_session, session_factory, services, blockchain):
    wanted = await seed_listing(db_session, "owner")
    source = await seed_listing(db_session, "u1", expires_at=utcnow() + timedelta(days=1))
    target = await services.targeting.propose_target(
        db_session, source_listing_id=source.id, target_listing_id=wanted.id, proposer_id="u1",
    )
    wanted_id, target_id = wanted.id, target.id

    with pytest.raises(ListingNoLongerAvailable):
        await services.acceptance.accept_proposal(db_session, target_id, "owner", now=utcnow() + timedelta(days=2))

    assert blockchain.attempts == 0
    assert (await reload_listing(db_session, wanted_id)).status == "pending"
    assert (await reload_target(db_session, target_id)).status == "active"

    # a later commit on the same session must not persist the claim
    await db_session.commit()
    async with session_factory() as fresh:
        assert (await reload_listing(fresh, wanted_id)).status == "pending"
        assert (await reload_target(fresh, target_id)).status == "active"


@pytest.mark.asyncio
async def test_swap_retires_other_proposals_of_both_listings(db_session, services):
    wanted, s1, _, t1, _ = await _two_proposals(db_session, services)
    # someone else wants u1's listing
    s3 = await seed_listing(db_session, "u3")
    t3 = await services.targeting.propose_target(db_session, source_listing_id=s3.id, target_listing_id=s1.id, proposer_id="u3")

    await services.acceptance.accept_proposal(db_session, t1.id, "owner")

    assert (await reload_target(db_session, t3.id)).status == "rejected"
    assert (await reload_listing(db_session, s3.id)).status == "pending"
    with pytest.raises(ProposalAlreadyResolved):
        await services.acceptance.accept_proposal(db_session, t3.id, "u1")


@pytest.mark.asyncio
async def test_reject_proposal(db_session, services, notifications):
    wanted, s1, _, t1, t2 = await _two_proposals(db_session, services)

    result = await services.acceptance.reject_proposal(db_session, t1.id, "owner", reason="dates do not work")

    assert result.proposal.status == "rejected"
    assert result.proposal.resolution_reason == "dates do not work"
    assert (await reload_listing(db_session, s1.id)).status == "pending"
    assert (await reload_target(db_session, t2.id)).status == "active"
    assert notifications.of_type("proposal.rejected") == [("u1", {
        "proposal_id": t1.id,
        "listing_id": wanted.id,
        "reason": "dates do not work",
    })]

    with pytest.raises(ProposalAlreadyResolved):
        await services.acceptance.reject_proposal(db_session, t1.id, "owner")
    with pytest.raises(Forbidden):
        await services.acceptance.reject_proposal(db_session, t2.id, "u1")
