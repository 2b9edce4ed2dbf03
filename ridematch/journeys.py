from datetime import datetime
from typing import Optional
from sqlalchemy import select, insert, update, and_
from sqlalchemy.exc import IntegrityError
import logging

from . import models, states
from .auth import Caller
from .directory import validate_point
from .errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError

logger = logging.getLogger(__name__)

MAX_SEATS = 4


async def load_journey(conn, journey_id: int, for_update: bool = False) -> dict:
    sel = select(models.journeys).where(models.journeys.c.id == journey_id)
    if for_update:
        sel = sel.with_for_update()
    row = (await conn.execute(sel)).first()
    if not row:
        raise NotFoundError(f"Journey {journey_id} not found")
    return dict(row._mapping)


async def create_journey(conn, caller: Caller, origin: tuple, destination: tuple,
                         pickup_address: str = None, dropoff_address: str = None,
                         preferred_vehicle_type: str = None, is_restricted: bool = False,
                         is_shareable: bool = False, seats: int = 1,
                         scheduled_at: Optional[datetime] = None) -> dict:
    origin = validate_point(*(origin or (None, None)), label="origin")
    destination = validate_point(*(destination or (None, None)), label="destination")
    if not 1 <= seats <= MAX_SEATS:
        raise ValidationError(f"seats must be between 1 and {MAX_SEATS}")
    if origin == destination:
        raise ValidationError("origin and destination must differ")

    now = models.utcnow()
    async with conn.begin():
        res = await conn.execute(
            insert(models.journeys).returning(models.journeys.c.id).values(
                passenger_id=caller.user_id,
                origin_lat=origin[0],
                origin_lon=origin[1],
                destination_lat=destination[0],
                destination_lon=destination[1],
                pickup_address=pickup_address,
                dropoff_address=dropoff_address,
                preferred_vehicle_type=preferred_vehicle_type,
                is_restricted=is_restricted,
                is_shareable=is_shareable,
                seats=seats,
                booked_seats=0,
                scheduled_at=scheduled_at,
                status=models.JOURNEY_OPEN,
                created_at=now,
                updated_at=now,
            )
        )
        journey_id = res.scalar_one()
        journey = await load_journey(conn, journey_id)
    logger.info("create_journey: journey=%s passenger=%s shareable=%s restricted=%s",
                journey_id, caller.user_id, is_shareable, is_restricted)
    return journey


async def find_idempotent_response(conn, key: str) -> Optional[dict]:
    async with conn.begin():
        row = (await conn.execute(
            select(models.idempotency_keys.c.response).where(models.idempotency_keys.c.key == key)
        )).first()
    return row.response if row else None


async def store_idempotent_response(conn, key: str, response: dict) -> dict:
    """Remember ``response`` under ``key``; if another request stored one first, that one wins."""
    try:
        async with conn.begin():
            await conn.execute(insert(models.idempotency_keys).values(key=key, response=response))
    except IntegrityError:
        logger.info("store_idempotent_response: key=%s already stored", key)
        return await find_idempotent_response(conn, key) or response
    return response


async def get_journey(conn, journey_id: int) -> dict:
    async with conn.begin():
        return await load_journey(conn, journey_id)


async def cancel_journey(conn, caller: Caller, journey_id: int) -> dict:
    """Withdraw an open journey; its pending bids are rejected."""
    async with conn.begin():
        journey = await load_journey(conn, journey_id, for_update=True)
        if journey["passenger_id"] != caller.user_id:
            raise AuthorizationError("You can only cancel your own journey")
        if journey["status"] != models.JOURNEY_OPEN:
            # matched journeys are cancelled through their ride
            raise StateConflictError(f"Journey {journey_id} is {journey['status']}; cancel the ride instead")
        new_status = states.transition("journey", journey["status"], "cancel")
        await conn.execute(
            update(models.journeys).where(models.journeys.c.id == journey_id).values(status=new_status)
        )
        await conn.execute(
            update(models.bids)
            .where(and_(models.bids.c.journey_id == journey_id, models.bids.c.status == models.BID_PENDING))
            .values(status=states.transition("bid", models.BID_PENDING, "reject"))
        )
        journey = await load_journey(conn, journey_id)
    logger.info("cancel_journey: journey=%s passenger=%s", journey_id, caller.user_id)
    return journey
