import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from ridematch import bidding, directory, models
from ridematch.auth import Caller
from ridematch.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError

pytestmark = pytest.mark.anyio

PASSENGER = Caller(100, "passenger")


def driver(driver_id):
    return Caller(driver_id, "driver")


async def test_submit_bid_creates_pending_bid(conn, make_driver, make_journey):
    await make_driver(1)
    journey = await make_journey(100)

    bid = await bidding.submit_bid(conn, driver(1), journey["id"], 1200.0, message="5 min away", ttl_sec=600)

    assert bid["status"] == models.BID_PENDING
    assert bid["amount"] == 1200.0
    assert bid["expires_at"] is not None


async def test_submit_bid_rejections(conn, make_driver, make_journey):
    await make_driver(1)
    await make_driver(2, available=False)
    await make_driver(100)
    journey = await make_journey(100)

    with pytest.raises(AuthorizationError):
        await bidding.submit_bid(conn, PASSENGER, journey["id"], 1000.0)
    with pytest.raises(AuthorizationError):
        await bidding.submit_bid(conn, Caller(100, "both"), journey["id"], 1000.0)
    with pytest.raises(NotFoundError):
        await bidding.submit_bid(conn, driver(1), 9999, 1000.0)
    with pytest.raises(ValidationError):
        await bidding.submit_bid(conn, driver(1), journey["id"], 0)
    with pytest.raises(ValidationError):
        await bidding.submit_bid(conn, driver(1), journey["id"], 1000.0,
                                 expires_at=models.utcnow() - timedelta(minutes=1))
    with pytest.raises(StateConflictError):
        await bidding.submit_bid(conn, driver(2), journey["id"], 1000.0)
    with pytest.raises(StateConflictError):
        await bidding.submit_bid(conn, driver(3), journey["id"], 1000.0)  # not in the directory

    await bidding.submit_bid(conn, driver(1), journey["id"], 1000.0)
    with pytest.raises(StateConflictError):
        await bidding.submit_bid(conn, driver(1), journey["id"], 900.0)


async def test_accept_bid_matches_journey_and_rejects_rivals(conn, make_driver, make_journey, fake_redis):
    for driver_id in (1, 2, 3):
        await make_driver(driver_id)
    journey = await make_journey(100)
    bids = [await bidding.submit_bid(conn, driver(d), journey["id"], 1000.0 + d * 100) for d in (1, 2, 3)]

    result = await bidding.accept_bid(conn, PASSENGER, bids[1]["id"])

    assert result["journey"]["status"] == models.JOURNEY_MATCHED
    assert result["journey"]["driver_id"] == 2
    assert result["journey"]["agreed_fare"] == 1200.0
    assert result["ride"]["status"] == models.RIDE_REQUESTED
    assert result["ride"]["bid_id"] == bids[1]["id"]
    assert result["merged"] is False

    listed = {b["driver_id"]: b["status"] for b in await bidding.list_bids_for_journey(conn, PASSENGER, journey["id"])}
    assert listed == {1: models.BID_REJECTED, 2: models.BID_ACCEPTED, 3: models.BID_REJECTED}
    assert "bid.accepted" in fake_redis.event_names()

    with pytest.raises(StateConflictError):
        await bidding.submit_bid(conn, driver(3), journey["id"], 900.0)


async def test_only_the_journey_owner_can_accept(conn, make_driver, make_journey):
    await make_driver(1)
    journey = await make_journey(100)
    bid = await bidding.submit_bid(conn, driver(1), journey["id"], 1000.0)

    with pytest.raises(AuthorizationError):
        await bidding.accept_bid(conn, Caller(101, "passenger"), bid["id"])
    with pytest.raises(NotFoundError):
        await bidding.accept_bid(conn, PASSENGER, 9999)


async def test_concurrent_accepts_yield_exactly_one_ride(engine, conn, make_driver, make_journey):
    n = 5
    for driver_id in range(1, n + 1):
        await make_driver(driver_id)
    journey = await make_journey(100)
    bids = [await bidding.submit_bid(conn, driver(d), journey["id"], 1000.0 + d) for d in range(1, n + 1)]

    async def attempt(bid_id):
        async with engine.connect() as c:
            return await bidding.accept_bid(c, PASSENGER, bid_id)

    results = await asyncio.gather(*(attempt(b["id"]) for b in bids), return_exceptions=True)

    accepted = [r for r in results if isinstance(r, dict)]
    failed = [r for r in results if not isinstance(r, dict)]
    assert len(accepted) == 1
    assert len(failed) == n - 1
    assert all(isinstance(e, StateConflictError) for e in failed)

    async with conn.begin():
        statuses = [r.status for r in (await conn.execute(
            select(models.bids.c.status).where(models.bids.c.journey_id == journey["id"]))).all()]
        ride_count = len((await conn.execute(
            select(models.rides.c.id).where(models.rides.c.journey_id == journey["id"]))).all())
    assert statuses.count(models.BID_ACCEPTED) == 1
    assert ride_count == 1


async def test_expired_bid_cannot_be_accepted(conn, make_driver, make_journey):
    await make_driver(1)
    await make_driver(2)
    journey = await make_journey(100)
    stale = await bidding.submit_bid(conn, driver(1), journey["id"], 1000.0, ttl_sec=60)
    fresh = await bidding.submit_bid(conn, driver(2), journey["id"], 1100.0)
    async with conn.begin():
        await conn.execute(update(models.bids).where(models.bids.c.id == stale["id"])
                           .values(expires_at=models.utcnow() - timedelta(seconds=1)))

    listed = {b["id"]: b["status"] for b in await bidding.list_bids_for_journey(conn, PASSENGER, journey["id"])}
    assert listed[stale["id"]] == models.BID_EXPIRED
    with pytest.raises(StateConflictError):
        await bidding.accept_bid(conn, PASSENGER, stale["id"])

    assert await bidding.expire_bids(conn) == 1
    assert await bidding.expire_bids(conn) == 0
    result = await bidding.accept_bid(conn, PASSENGER, fresh["id"])
    assert result["bid"]["status"] == models.BID_ACCEPTED


async def test_bid_listings(conn, make_driver, make_journey):
    await make_driver(1)
    await make_driver(2)
    first = await make_journey(100)
    second = await make_journey(101)
    await bidding.submit_bid(conn, driver(1), first["id"], 1500.0)
    await bidding.submit_bid(conn, driver(2), first["id"], 900.0)
    await bidding.submit_bid(conn, driver(1), second["id"], 700.0)

    cheapest_first = await bidding.list_bids_for_journey(conn, PASSENGER, first["id"])
    assert [b["amount"] for b in cheapest_first] == [900.0, 1500.0]
    with pytest.raises(AuthorizationError):
        await bidding.list_bids_for_journey(conn, Caller(101, "passenger"), first["id"])

    mine = await bidding.list_bids_for_driver(conn, driver(1))
    assert [b["journey_id"] for b in mine] == [second["id"], first["id"]]


async def test_unavailable_driver_drops_out_of_the_geo_index(conn, make_driver, fake_redis):
    await make_driver(1)
    await directory.set_driver_availability(conn, 1, False)
    assert "1" not in fake_redis.geo
    with pytest.raises(NotFoundError):
        await directory.set_driver_availability(conn, 42, True)
