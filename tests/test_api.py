import pytest

from swapmarket.errors import GatewayUnavailable, PaymentDeclined

from tests.fixtures_seed import end_auction_now, reload_listing, seed_auction, seed_cash_listing, seed_listing


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


@pytest.mark.asyncio
async def test_requests_need_a_user(client):
    r = await client.get("/v1/targeting/history")
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_propose_and_accept_flow(client, db_session):
    wanted = await seed_listing(db_session, "owner")
    mine = await seed_listing(db_session, "u1")

    r = await client.get(
        f"/v1/listings/{mine.id}/target/eligibility",
        params={"target_listing_id": wanted.id},
        headers=as_user("u1"),
    )
    assert r.status_code == 200, r.text
    assert r.json()["eligible"] is True

    r = await client.post(
        f"/v1/listings/{mine.id}/target",
        headers=as_user("u1"),
        json={"target_listing_id": wanted.id, "message": "swap?", "conditions": ["same week"]},
    )
    assert r.status_code == 201, r.text
    target = r.json()
    assert target["status"] == "active"
    assert target["source_listing_id"] == mine.id

    r = await client.post(f"/v1/proposals/{target['id']}/accept", headers=as_user("owner"), json={"deadline_seconds": 10})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["proposal"]["status"] == "accepted"
    assert body["settlement"]["status"] == "completed"
    assert body["auction"] is None
    settlement_id = body["settlement"]["id"]

    r = await client.post(f"/v1/proposals/{target['id']}/accept", headers=as_user("owner"))
    assert r.status_code == 409
    assert r.json()["code"] == "proposal_already_resolved"

    r = await client.get(f"/v1/settlements/{settlement_id}", headers=as_user("u1"))
    assert r.status_code == 200
    assert r.json()["blockchain_transaction_id"] == "0xtx1"

    r = await client.get(f"/v1/settlements/{settlement_id}", headers=as_user("stranger"))
    assert r.status_code == 404
    assert r.json()["code"] == "settlement_not_found"

    assert (await reload_listing(db_session, wanted.id)).status == "completed"


@pytest.mark.asyncio
async def test_error_statuses(client, db_session):
    wanted = await seed_cash_listing(db_session, "owner", minimum="100.00")
    mine = await seed_listing(db_session, "u1")

    r = await client.post(f"/v1/listings/{mine.id}/target", headers=as_user("u1"), json={"target_listing_id": "lst_nope"})
    assert r.status_code == 404
    assert r.json()["code"] == "listing_not_found"

    r = await client.post(f"/v1/listings/{mine.id}/target", headers=as_user("owner"), json={"target_listing_id": wanted.id})
    assert r.status_code == 403
    assert r.json()["code"] == "self_targeting_not_allowed"

    r = await client.post(
        f"/v1/listings/{wanted.id}/cash-offers",
        headers=as_user("u1"),
        json={"amount": "50.00", "currency": "EUR", "payment_method_id": "pm_1"},
    )
    assert r.status_code == 422
    body = r.json()
    assert body["code"] == "cash_offer_below_minimum"
    assert body["details"] == [{"amount": "50.00", "minimum": "100.00"}]

    r = await client.post(f"/v1/listings/{mine.id}/retarget", headers=as_user("u1"), json={"new_target_listing_id": wanted.id})
    assert r.status_code == 409
    assert r.json()["code"] == "no_active_target"

    # request body validation stays with FastAPI
    r = await client.post(f"/v1/listings/{mine.id}/target", headers=as_user("u1"), json={})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_settlement_failures_over_http(client, db_session, payments):
    listing = await seed_cash_listing(db_session, "owner", minimum="10.00")

    r = await client.post(
        f"/v1/listings/{listing.id}/cash-offers",
        headers=as_user("buyer"),
        json={"amount": "25.00", "currency": "EUR", "payment_method_id": "pm_1"},
    )
    assert r.status_code == 201, r.text
    offer_id = r.json()["id"]

    payments.fail_on["create_escrow"] = GatewayUnavailable()
    r = await client.post(f"/v1/proposals/{offer_id}/accept", headers=as_user("owner"))
    assert r.status_code == 503
    assert r.headers["Retry-After"] == "5"
    assert r.json()["code"] == "settlement_failed"

    payments.fail_on["create_escrow"] = PaymentDeclined()
    r = await client.post(f"/v1/proposals/{offer_id}/accept", headers=as_user("owner"))
    assert r.status_code == 402
    assert "Retry-After" not in r.headers

    assert (await reload_listing(db_session, listing.id)).status == "pending"


@pytest.mark.asyncio
async def test_reject_over_http(client, db_session):
    wanted = await seed_listing(db_session, "owner")
    mine = await seed_listing(db_session, "u1")
    r = await client.post(f"/v1/listings/{mine.id}/target", headers=as_user("u1"), json={"target_listing_id": wanted.id})
    target_id = r.json()["id"]

    r = await client.post(f"/v1/proposals/{target_id}/reject", headers=as_user("u1"), json={"reason": "nope"})
    assert r.status_code == 403
    assert r.json()["code"] == "forbidden"

    r = await client.post(f"/v1/proposals/{target_id}/reject", headers=as_user("owner"), json={"reason": "nope"})
    assert r.status_code == 200
    assert r.json()["proposal"]["status"] == "rejected"

    r = await client.delete(f"/v1/listings/{mine.id}/target", headers=as_user("u1"))
    assert r.status_code == 409
    assert r.json()["code"] == "no_active_target"


@pytest.mark.asyncio
async def test_auction_endpoints(client, db_session):
    auction = await seed_auction(db_session, "host")

    r = await client.get(f"/v1/auctions/{auction.id}", headers=as_user("p1"))
    assert r.status_code == 200
    assert r.json()["status"] == "open"

    r = await client.post(
        f"/v1/auctions/{auction.id}/proposals",
        headers=as_user("p1"),
        json={"proposal_type": "cash", "cash_amount": "300.00", "cash_currency": "EUR", "payment_method_id": "pm_1"},
    )
    assert r.status_code == 201, r.text
    proposal_id = r.json()["id"]

    r = await client.get(f"/v1/auctions/{auction.id}/proposals", headers=as_user("p1"))
    assert r.status_code == 403

    r = await client.post(f"/v1/auctions/{auction.id}/winner", headers=as_user("host"), json={"proposal_id": proposal_id})
    assert r.status_code == 409
    assert r.json()["code"] == "auction_not_ended"

    await end_auction_now(db_session, auction)

    r = await client.get(f"/v1/auctions/{auction.id}/proposals", headers=as_user("host"))
    assert r.status_code == 200
    assert [p["id"] for p in r.json()] == [proposal_id]

    r = await client.post(f"/v1/auctions/{auction.id}/winner", headers=as_user("host"), json={"proposal_id": proposal_id})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["auction"]["status"] == "winner_selected"
    assert body["winning_proposal"]["status"] == "won"
    assert body["settlement"]["status"] == "completed"

    r = await client.get("/v1/auctions/auc_missing", headers=as_user("p1"))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_history_endpoint(client, db_session):
    wanted = await seed_listing(db_session, "owner")
    mine = await seed_listing(db_session, "u1")
    await client.post(f"/v1/listings/{mine.id}/target", headers=as_user("u1"), json={"target_listing_id": wanted.id})

    r = await client.get("/v1/targeting/history", params={"listing_id": wanted.id}, headers=as_user("owner"))
    assert r.status_code == 200
    page = r.json()
    assert page["total"] == 1
    assert page["items"][0]["event_type"] == "targeted"

    r = await client.get("/v1/targeting/history", params={"listing_id": wanted.id}, headers=as_user("u1"))
    assert r.status_code == 403

    r = await client.get(
        "/v1/targeting/history",
        params=[("event_type", "targeted"), ("event_type", "removed")],
        headers=as_user("u1"),
    )
    assert r.status_code == 200
    assert r.json()["total"] == 1
