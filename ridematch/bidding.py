"""Bid Ledger: driver offers against open journeys and their acceptance."""
from datetime import datetime, timedelta
from typing import Optional, List
from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError
import logging

from . import events, models, rides, states
from .auth import Caller
from .errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from .journeys import load_journey

logger = logging.getLogger(__name__)


def effective_status(bid: dict, now: datetime = None) -> str:
    """Pending bids past their expiry read as expired, whether or not a sweep has run."""
    now = now or models.utcnow()
    expires_at = models.as_utc(bid.get("expires_at"))
    if bid["status"] == models.BID_PENDING and expires_at is not None and expires_at <= now:
        return models.BID_EXPIRED
    return bid["status"]


def _present(row, now: datetime) -> dict:
    bid = dict(row._mapping)
    bid["status"] = effective_status(bid, now)
    return bid


async def load_bid(conn, bid_id: int, for_update: bool = False) -> dict:
    sel = select(models.bids).where(models.bids.c.id == bid_id)
    if for_update:
        sel = sel.with_for_update()
    row = (await conn.execute(sel)).first()
    if not row:
        raise NotFoundError(f"Bid {bid_id} not found")
    return dict(row._mapping)


async def submit_bid(conn, caller: Caller, journey_id: int, amount: float, message: str = None,
                     expires_at: Optional[datetime] = None, ttl_sec: Optional[int] = None) -> dict:
    if not caller.can_drive:
        raise AuthorizationError("Only drivers can place bids")
    if amount is None or amount <= 0:
        raise ValidationError("Bid amount must be positive")
    now = models.utcnow()
    if ttl_sec is not None:
        if ttl_sec <= 0:
            raise ValidationError("ttl_sec must be positive")
        expires_at = now + timedelta(seconds=ttl_sec)
    expires_at = models.as_utc(expires_at)
    if expires_at is not None and expires_at <= now:
        raise ValidationError("Bid expiry must be in the future")

    try:
        async with conn.begin():
            journey = await load_journey(conn, journey_id)
            if journey["status"] != models.JOURNEY_OPEN:
                raise StateConflictError("This journey is no longer open for bidding")
            if journey["passenger_id"] == caller.user_id:
                raise AuthorizationError("You cannot bid on your own journey request")

            driver = (await conn.execute(
                select(models.drivers).where(models.drivers.c.id == caller.user_id)
            )).first()
            if not driver or not driver._mapping["available"]:
                raise StateConflictError("Driver is not available for new rides")

            existing = (await conn.execute(
                select(models.bids.c.id).where(and_(models.bids.c.journey_id == journey_id,
                                                    models.bids.c.driver_id == caller.user_id))
            )).first()
            if existing:
                raise StateConflictError("You have already placed a bid on this journey")

            res = await conn.execute(
                insert(models.bids).returning(models.bids.c.id).values(
                    journey_id=journey_id,
                    driver_id=caller.user_id,
                    amount=amount,
                    message=message,
                    status=models.BID_PENDING,
                    expires_at=expires_at,
                    created_at=now,
                    updated_at=now,
                )
            )
            bid = await load_bid(conn, res.scalar_one())
    except IntegrityError:
        raise StateConflictError("You have already placed a bid on this journey") from None
    logger.info("submit_bid: bid=%s journey=%s driver=%s amount=%s", bid["id"], journey_id, caller.user_id, amount)
    return bid


async def accept_bid(conn, caller: Caller, bid_id: int) -> dict:
    """Accept one bid: the bid, its rivals, the journey and the ride change together or not at all.

    The journey is flipped with ``UPDATE ... WHERE status = 'open'``; when a
    concurrent acceptance got there first the update touches no row and this
    call fails with StateConflictError.
    """
    now = models.utcnow()
    async with conn.begin():
        bid = await load_bid(conn, bid_id, for_update=True)
        journey = await load_journey(conn, bid["journey_id"], for_update=True)
        if journey["passenger_id"] != caller.user_id:
            raise AuthorizationError("You are not authorized to accept bids for this journey")
        status = effective_status(bid, now)
        if status != models.BID_PENDING:
            raise StateConflictError(f"Bid {bid_id} is {status}")
        if journey["status"] != models.JOURNEY_OPEN:
            raise StateConflictError("Journey is no longer open")

        journey_status = states.transition("journey", journey["status"], "match")
        res = await conn.execute(
            update(models.journeys)
            .where(and_(models.journeys.c.id == journey["id"], models.journeys.c.status == models.JOURNEY_OPEN))
            .values(status=journey_status, driver_id=bid["driver_id"], agreed_fare=bid["amount"])
        )
        if res.rowcount != 1:
            raise StateConflictError("Journey is no longer open")

        res = await conn.execute(
            update(models.bids)
            .where(and_(models.bids.c.id == bid_id, models.bids.c.status == models.BID_PENDING))
            .values(status=states.transition("bid", models.BID_PENDING, "accept"))
        )
        if res.rowcount != 1:
            raise StateConflictError(f"Bid {bid_id} is no longer pending")

        rejected = await conn.execute(
            update(models.bids)
            .where(and_(models.bids.c.journey_id == journey["id"],
                        models.bids.c.status == models.BID_PENDING,
                        models.bids.c.id != bid_id))
            .values(status=states.transition("bid", models.BID_PENDING, "reject"))
        )

        journey.update(status=journey_status, driver_id=bid["driver_id"], agreed_fare=bid["amount"])
        bid["status"] = models.BID_ACCEPTED
        ride, merged = await rides.create_ride_from_bid(conn, journey, bid)

    logger.info("accept_bid: bid=%s journey=%s driver=%s ride=%s merged=%s rejected=%s",
                bid_id, journey["id"], bid["driver_id"], ride["id"], merged, rejected.rowcount)
    await events.publish(events.BID_ACCEPTED, {
        "bid_id": bid_id,
        "status": bid["status"],
        "journey_id": journey["id"],
        "driver_id": bid["driver_id"],
        "passenger_id": journey["passenger_id"],
        "agreed_fare": bid["amount"],
        "ride_id": ride["id"],
    })
    return {"bid": bid, "journey": journey, "ride": ride, "merged": merged}


async def list_bids_for_journey(conn, caller: Caller, journey_id: int) -> List[dict]:
    now = models.utcnow()
    async with conn.begin():
        journey = await load_journey(conn, journey_id)
        if journey["passenger_id"] != caller.user_id:
            raise AuthorizationError("You are not authorized to view bids for this journey")
        sel = select(models.bids).where(models.bids.c.journey_id == journey_id).order_by(
            models.bids.c.amount, models.bids.c.id)
        rows = (await conn.execute(sel)).all()
    return [_present(r, now) for r in rows]


async def list_bids_for_driver(conn, caller: Caller) -> List[dict]:
    now = models.utcnow()
    async with conn.begin():
        sel = select(models.bids).where(models.bids.c.driver_id == caller.user_id).order_by(
            models.bids.c.created_at.desc(), models.bids.c.id.desc())
        rows = (await conn.execute(sel)).all()
    return [_present(r, now) for r in rows]


async def expire_bids(conn) -> int:
    """Persist the expiry of pending bids past their deadline. Returns the number expired."""
    now = models.utcnow()
    async with conn.begin():
        res = await conn.execute(
            update(models.bids)
            .where(and_(models.bids.c.status == models.BID_PENDING,
                        models.bids.c.expires_at.is_not(None),
                        models.bids.c.expires_at <= now))
            .values(status=states.transition("bid", models.BID_PENDING, "expire"))
        )
    if res.rowcount:
        logger.info("expire_bids: expired %d bids", res.rowcount)
    return res.rowcount
