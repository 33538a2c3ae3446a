from datetime import timedelta

import pytest

from swapmarket.core.clock import utcnow
from swapmarket.errors import InvalidRequest
from swapmarket.services.targeting_history import HistoryFilters, record_event

from tests.fixtures_seed import seed_listing


async def _activity(db, services):
    a = await seed_listing(db, "alice")
    b = await seed_listing(db, "bob")
    c = await seed_listing(db, "carol")
    await services.targeting.propose_target(db, source_listing_id=a.id, target_listing_id=b.id, proposer_id="alice")
    await services.targeting.retarget(db, source_listing_id=a.id, new_target_listing_id=c.id, proposer_id="alice")
    await services.targeting.propose_target(db, source_listing_id=b.id, target_listing_id=c.id, proposer_id="bob")
    return a, b, c


@pytest.mark.asyncio
async def test_history_by_listing(db_session, services):
    a, b, c = await _activity(db_session, services)

    page = await services.targeting.get_targeting_history(db_session, HistoryFilters(listing_id=c.id))

    assert page.total == 2
    assert sorted(e.event_type for e in page.items) == ["retargeted", "targeted"]
    assert page.has_more is False


@pytest.mark.asyncio
async def test_history_by_user_sees_both_sides(db_session, services):
    await _activity(db_session, services)

    # bob is the counterparty of the first event and the actor of the last
    page = await services.targeting.get_targeting_history(db_session, HistoryFilters(user_id="bob"))
    assert page.total == 2
    assert {e.actor_id for e in page.items} == {"alice", "bob"}

    only_own = await services.targeting.get_targeting_history(
        db_session, HistoryFilters(user_id="alice", event_types=("retargeted",)),
    )
    assert [e.event_type for e in only_own.items] == ["retargeted"]


@pytest.mark.asyncio
async def test_history_paging_and_order(db_session, services):
    a, _, _ = await _activity(db_session, services)
    for i in range(3):
        await record_event(db_session, event_type="note", message=f"note {i}", source_listing_id=a.id)
        await db_session.commit()

    first = await services.targeting.get_targeting_history(db_session, HistoryFilters(listing_id=a.id), limit=2)
    assert first.total == 5
    assert len(first.items) == 2
    assert first.has_more is True

    rest = await services.targeting.get_targeting_history(db_session, HistoryFilters(listing_id=a.id), limit=2, offset=4)
    assert len(rest.items) == 1
    assert rest.has_more is False

    oldest_first = await services.targeting.get_targeting_history(
        db_session, HistoryFilters(listing_id=a.id), order="asc", limit=5,
    )
    stamps = [e.created_at for e in oldest_first.items]
    assert stamps == sorted(stamps)


@pytest.mark.asyncio
async def test_history_search_and_severity(db_session, services):
    a, _, _ = await _activity(db_session, services)
    await record_event(
        db_session, event_type="settlement_failed", severity="error",
        message="Settlement stl_1 failed at payment: 100%_down", source_listing_id=a.id,
    )
    await db_session.commit()

    errors = await services.targeting.get_targeting_history(
        db_session, HistoryFilters(listing_id=a.id, severities=("error",)),
    )
    assert [e.event_type for e in errors.items] == ["settlement_failed"]

    found = await services.targeting.get_targeting_history(
        db_session, HistoryFilters(listing_id=a.id, search="100%_DOWN"),
    )
    assert found.total == 1

    nothing = await services.targeting.get_targeting_history(
        db_session, HistoryFilters(listing_id=a.id, date_from=utcnow() + timedelta(hours=1)),
    )
    assert nothing.total == 0


@pytest.mark.asyncio
async def test_history_validation(db_session, services):
    with pytest.raises(InvalidRequest):
        await services.targeting.get_targeting_history(db_session, HistoryFilters())
    with pytest.raises(InvalidRequest):
        await services.targeting.get_targeting_history(db_session, HistoryFilters(user_id="u"), limit=0)
    with pytest.raises(InvalidRequest):
        await services.targeting.get_targeting_history(db_session, HistoryFilters(user_id="u", severities=("loud",)))
    with pytest.raises(InvalidRequest):
        await services.targeting.get_targeting_history(db_session, HistoryFilters(user_id="u"), order="sideways")
    with pytest.raises(InvalidRequest):
        await services.targeting.get_targeting_history(
            db_session, HistoryFilters(user_id="u", date_from=utcnow(), date_to=utcnow() - timedelta(days=1)),
        )
