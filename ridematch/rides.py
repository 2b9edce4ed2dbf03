"""Ride Lifecycle Manager.

Owns rides and their per-passenger legs. Every transition is checked against
``states.RIDE_TRANSITIONS`` and written with a conditional update on the status
it was read in, inside the caller's transaction, so a concurrent change makes
the unit fail instead of overwriting it.

Private rides: the ride status is authoritative and the single leg follows it.
Shared rides: legs are the source of truth; the ride turns ``ongoing`` when the
first passenger boards and ``completed`` when the last one is dropped off.
A waiting passenger the driver marks ``no_show`` is left out of both.
"""
from datetime import timedelta
from typing import Optional, List, Tuple
from sqlalchemy import select, insert, update, delete, and_
import logging

from .config import settings
from . import events, models, states
from .auth import Caller
from .directory import haversine_km
from .errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError

logger = logging.getLogger(__name__)

LEG_STATUSES = (models.LEG_WAITING, models.LEG_ON_BOARD, models.LEG_DROPPED_OFF, models.LEG_NO_SHOW)
LEG_UPDATABLE_RIDE_STATUSES = (models.RIDE_ACCEPTED, models.RIDE_DRIVER_ARRIVED, models.RIDE_ONGOING)
# a passenger can only miss the pickup once the driver is there
LEG_NO_SHOW_RIDE_STATUSES = (models.RIDE_DRIVER_ARRIVED, models.RIDE_ONGOING)


# ---------------------------------------------------------------- loading

async def load_ride(conn, ride_id: int, for_update: bool = False) -> dict:
    sel = select(models.rides).where(models.rides.c.id == ride_id)
    if for_update:
        sel = sel.with_for_update()
    row = (await conn.execute(sel)).first()
    if not row:
        raise NotFoundError(f"Ride {ride_id} not found")
    return dict(row._mapping)


async def load_legs(conn, ride_id: int) -> List[dict]:
    sel = select(models.ride_legs).where(models.ride_legs.c.ride_id == ride_id).order_by(models.ride_legs.c.id)
    return [dict(r._mapping) for r in (await conn.execute(sel)).all()]


def _is_participant(ride: dict, legs: List[dict], user_id: int) -> bool:
    return user_id in (ride["driver_id"], ride["passenger_id"]) or any(l["passenger_id"] == user_id for l in legs)


def _require_driver(ride: dict, caller: Caller, what: str):
    if caller.user_id != ride["driver_id"]:
        raise AuthorizationError(f"Only the assigned driver can {what} this ride")


async def _apply(conn, ride: dict, action: str, **values) -> dict:
    """Move ``ride`` through ``action`` and persist it, guarded on the status it was read in."""
    new_status = states.transition("ride", ride["status"], action)
    res = await conn.execute(
        update(models.rides)
        .where(and_(models.rides.c.id == ride["id"], models.rides.c.status == ride["status"]))
        .values(status=new_status, **values)
    )
    if res.rowcount != 1:
        raise StateConflictError(f"Ride {ride['id']} was modified concurrently")
    logger.info("ride_transition: ride=%s %s -> %s (%s)", ride["id"], ride["status"], new_status, action)
    ride.update(status=new_status, **values)
    return ride


async def _set_leg_status(conn, ride_id: int, status: str):
    await conn.execute(update(models.ride_legs).where(models.ride_legs.c.ride_id == ride_id).values(status=status))


async def _close_journeys(conn, journey_ids, action: str):
    if not journey_ids:
        return
    target = states.transition("journey", models.JOURNEY_MATCHED, action)
    await conn.execute(
        update(models.journeys)
        .where(and_(models.journeys.c.id.in_(list(journey_ids)),
                    models.journeys.c.status == models.JOURNEY_MATCHED))
        .values(status=target)
    )


async def _finish(conn, ride: dict, legs: List[dict], final_fare: float, distance_meters: Optional[float]) -> dict:
    ride = await _apply(conn, ride, "complete", final_fare=final_fare, distance_meters=distance_meters,
                        completed_at=models.utcnow())
    await _close_journeys(conn, {l["journey_id"] for l in legs}, "complete")
    await conn.execute(
        update(models.drivers)
        .where(models.drivers.c.id == ride["driver_id"])
        .values(total_rides=models.drivers.c.total_rides + 1)
    )
    return ride


# ---------------------------------------------------------------- creation

def _departure(journey: dict):
    return models.as_utc(journey["scheduled_at"]) or models.as_utc(journey["created_at"])


async def find_shared_ride(conn, journey: dict, driver_id: int) -> Optional[dict]:
    """Open shared ride by ``driver_id`` on a compatible corridor and time window, if any."""
    sel = (
        select(models.rides.c.id, models.journeys)
        .select_from(models.rides.join(models.journeys, models.rides.c.journey_id == models.journeys.c.id))
        .where(and_(
            models.rides.c.driver_id == driver_id,
            models.rides.c.ride_type == models.RIDE_SHARED,
            models.rides.c.status.in_(models.RIDE_OPEN_STATUSES),
            models.journeys.c.is_restricted == bool(journey["is_restricted"]),
        ))
        .order_by(models.rides.c.id)
    )
    window = timedelta(minutes=settings.SHARED_RIDE_WINDOW_MIN)
    departure = _departure(journey)
    for row in (await conn.execute(sel)).all():
        primary = row._mapping
        if primary[models.journeys.c.id] == journey["id"]:
            continue
        distance = haversine_km(
            (primary[models.journeys.c.origin_lat], primary[models.journeys.c.origin_lon]),
            (journey["origin_lat"], journey["origin_lon"]),
        )
        primary_departure = models.as_utc(primary[models.journeys.c.scheduled_at]) or \
            models.as_utc(primary[models.journeys.c.created_at])
        if distance <= settings.SHARED_RIDE_PICKUP_RADIUS_KM and abs(primary_departure - departure) <= window:
            return await load_ride(conn, primary[models.rides.c.id], for_update=True)
    return None


async def _insert_leg(conn, ride_id: int, journey: dict, bid: dict):
    await conn.execute(
        insert(models.ride_legs).values(
            ride_id=ride_id,
            journey_id=journey["id"],
            passenger_id=journey["passenger_id"],
            seats_booked=journey["seats"],
            fare_contribution=bid["amount"],
            status=models.LEG_WAITING,
        )
    )
    await conn.execute(
        update(models.journeys).where(models.journeys.c.id == journey["id"]).values(booked_seats=journey["seats"])
    )


async def add_passenger_to_shared_ride(conn, ride: dict, journey: dict, bid: dict) -> dict:
    legs = await load_legs(conn, ride["id"])
    if any(l["passenger_id"] == journey["passenger_id"] for l in legs):
        raise StateConflictError("Passenger already joined this ride")
    booked = sum(l["seats_booked"] for l in legs)
    if booked + journey["seats"] > ride["capacity"]:
        raise StateConflictError(f"Ride {ride['id']} is at full capacity ({booked}/{ride['capacity']} seats)")
    await _insert_leg(conn, ride["id"], journey, bid)
    logger.info("add_passenger_to_shared_ride: ride=%s passenger=%s seats=%s",
                ride["id"], journey["passenger_id"], journey["seats"])
    return ride


async def create_ride_from_bid(conn, journey: dict, bid: dict) -> Tuple[dict, bool]:
    """Create the ride for an accepted bid, or merge into an open shared ride.

    Runs inside the bid-acceptance transaction. Returns ``(ride, merged)``.
    """
    if journey["is_shareable"]:
        existing = await find_shared_ride(conn, journey, bid["driver_id"])
        if existing:
            return await add_passenger_to_shared_ride(conn, existing, journey, bid), True

    shared = bool(journey["is_shareable"])
    capacity = settings.SHARED_RIDE_CAPACITY if shared else journey["seats"]
    if journey["seats"] > capacity:
        raise StateConflictError(f"Journey needs {journey['seats']} seats; rides hold {capacity}")
    res = await conn.execute(
        insert(models.rides).returning(models.rides.c.id).values(
            journey_id=journey["id"],
            bid_id=bid["id"],
            passenger_id=journey["passenger_id"],
            driver_id=bid["driver_id"],
            ride_type=models.RIDE_SHARED if shared else models.RIDE_PRIVATE,
            capacity=capacity,
            fare=bid["amount"],
            pickup={"lat": journey["origin_lat"], "lon": journey["origin_lon"],
                    "address": journey["pickup_address"]},
            dropoff={"lat": journey["destination_lat"], "lon": journey["destination_lon"],
                     "address": journey["dropoff_address"]},
            scheduled_at=journey["scheduled_at"],
            status=models.RIDE_REQUESTED,
            paid=False,
            tip_amount=0.0,
        )
    )
    ride_id = res.scalar_one()
    await _insert_leg(conn, ride_id, journey, bid)
    logger.info("create_ride_from_bid: ride=%s journey=%s bid=%s type=%s",
                ride_id, journey["id"], bid["id"], "shared" if shared else "private")
    return await load_ride(conn, ride_id), False


# ---------------------------------------------------------------- reads

async def get_ride(conn, caller: Caller, ride_id: int) -> dict:
    async with conn.begin():
        ride = await load_ride(conn, ride_id)
        legs = await load_legs(conn, ride_id)
    if not caller.is_operator and not _is_participant(ride, legs, caller.user_id):
        raise AuthorizationError("You are not a participant of this ride")
    ride["legs"] = legs
    return ride


# ---------------------------------------------------------------- driver actions

async def confirm_ride(conn, caller: Caller, ride_id: int) -> dict:
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        _require_driver(ride, caller, "accept")
        ride = await _apply(conn, ride, "accept", accepted_at=models.utcnow())
    await events.publish(events.RIDE_ACCEPTED, {"ride_id": ride_id, "status": ride["status"],
                                                "driver_id": ride["driver_id"]})
    return ride


async def mark_arrived(conn, caller: Caller, ride_id: int) -> dict:
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        _require_driver(ride, caller, "update")
        ride = await _apply(conn, ride, "arrive", arrived_at=models.utcnow())
    return ride


async def start_ride(conn, caller: Caller, ride_id: int) -> dict:
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        _require_driver(ride, caller, "start")
        if ride["ride_type"] == models.RIDE_SHARED:
            raise StateConflictError("Shared rides start when the first passenger boards")
        ride = await _apply(conn, ride, "start", started_at=models.utcnow())
        await _set_leg_status(conn, ride_id, models.LEG_ON_BOARD)
    await events.publish(events.RIDE_STARTED, {"ride_id": ride_id, "status": ride["status"]})
    return ride


async def end_ride(conn, caller: Caller, ride_id: int, final_fare: float = None,
                   distance_meters: float = None) -> dict:
    if final_fare is None or distance_meters is None:
        raise ValidationError("final_fare and distance_meters are required to complete a ride")
    if final_fare < 0 or distance_meters < 0:
        raise ValidationError("final_fare and distance_meters must not be negative")
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        _require_driver(ride, caller, "end")
        if ride["ride_type"] == models.RIDE_SHARED:
            raise StateConflictError("Shared rides complete when the last passenger is dropped off")
        legs = await load_legs(conn, ride_id)
        ride = await _finish(conn, ride, legs, final_fare, distance_meters)
        await _set_leg_status(conn, ride_id, models.LEG_DROPPED_OFF)
    await events.publish(events.RIDE_COMPLETED, {"ride_id": ride_id, "status": ride["status"],
                                                 "final_fare": ride["final_fare"]})
    return ride


# ---------------------------------------------------------------- cancellation

async def cancel_ride(conn, caller: Caller, ride_id: int, reason: str = None) -> dict:
    """Cancel before pickup.

    The driver or primary passenger cancels the whole ride. A co-passenger on a
    shared ride only withdraws their own leg.
    """
    if not reason or not reason.strip():
        raise ValidationError("A cancellation reason is required")
    withdrawn = None
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        legs = await load_legs(conn, ride_id)
        if caller.user_id == ride["driver_id"]:
            action = "cancel_by_driver"
        elif caller.user_id == ride["passenger_id"]:
            action = "cancel_by_passenger"
        elif any(l["passenger_id"] == caller.user_id for l in legs):
            withdrawn = await _withdraw_leg(conn, ride, legs, caller.user_id)
        else:
            raise AuthorizationError("Only the ride's driver or passenger can cancel it")

        if withdrawn is None:
            ride = await _apply(conn, ride, action, cancelled_at=models.utcnow(),
                                cancellation_reason=reason.strip())
            await _close_journeys(conn, {l["journey_id"] for l in legs}, "cancel")

    if withdrawn is not None:
        await events.publish(events.RIDE_CANCELLED, {"ride_id": ride_id, "status": ride["status"],
                                                     "passenger_id": caller.user_id, "scope": "leg"})
        return ride
    await events.publish(events.RIDE_CANCELLED, {"ride_id": ride_id, "status": ride["status"],
                                                 "cancelled_by": caller.user_id, "reason": reason.strip()})
    return ride


async def _withdraw_leg(conn, ride: dict, legs: List[dict], passenger_id: int) -> dict:
    if not states.can_transition("ride", ride["status"], "cancel_by_passenger"):
        raise StateConflictError(f"Cannot leave a ride that is {ride['status']}")
    leg = next(l for l in legs if l["passenger_id"] == passenger_id)
    if leg["status"] != models.LEG_WAITING:
        raise StateConflictError("Passenger is already on board")
    await conn.execute(delete(models.ride_legs).where(models.ride_legs.c.id == leg["id"]))
    await _close_journeys(conn, {leg["journey_id"]}, "cancel")
    await conn.execute(
        update(models.journeys).where(models.journeys.c.id == leg["journey_id"]).values(booked_seats=0)
    )
    logger.info("withdraw_leg: ride=%s passenger=%s seats_freed=%s", ride["id"], passenger_id, leg["seats_booked"])
    return leg


async def report_no_show(conn, caller: Caller, ride_id: int) -> dict:
    """Driver reports a missing passenger after arriving; the passenger reports a driver who never came."""
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        if caller.user_id == ride["driver_id"]:
            action = "passenger_no_show"
        elif caller.user_id == ride["passenger_id"]:
            action = "driver_no_show"
        else:
            raise AuthorizationError("Only the ride's driver or passenger can report a no-show")
        legs = await load_legs(conn, ride_id)
        ride = await _apply(conn, ride, action, cancelled_at=models.utcnow())
        await _close_journeys(conn, {l["journey_id"] for l in legs}, "cancel")
    await events.publish(events.RIDE_NO_SHOW, {"ride_id": ride_id, "status": ride["status"]})
    return ride


# ---------------------------------------------------------------- shared ride legs

async def update_passenger_leg_status(conn, caller: Caller, ride_id: int, passenger_id: int, status: str) -> dict:
    """Move one passenger's leg and recompute the ride's aggregate status.

    Setting a leg to the state it already has is a no-op. The ride row is locked
    first so recomputation serializes per ride.
    """
    if status not in LEG_STATUSES:
        raise ValidationError(f"Unknown leg status {status!r}")
    published = []
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        _require_driver(ride, caller, "update passengers on")
        if ride["ride_type"] != models.RIDE_SHARED:
            raise StateConflictError("Private rides are driven through start and end")

        legs = await load_legs(conn, ride_id)
        leg = next((l for l in legs if l["passenger_id"] == passenger_id), None)
        if leg is None:
            raise NotFoundError(f"Passenger {passenger_id} is not on ride {ride_id}")
        if leg["status"] == status:
            logger.debug("update_passenger_leg_status: ride=%s passenger=%s already %s", ride_id, passenger_id, status)
            ride["legs"] = legs
            return ride
        if ride["status"] not in LEG_UPDATABLE_RIDE_STATUSES:
            raise StateConflictError(f"Cannot update passengers on a ride that is {ride['status']}")

        action = states.LEG_ACTIONS.get(status)
        if action is None:
            raise StateConflictError(f"Leg cannot go back to {status}")
        if status == models.LEG_NO_SHOW and ride["status"] not in LEG_NO_SHOW_RIDE_STATUSES:
            raise StateConflictError("A passenger can only be marked a no-show once the driver has arrived")
        new_status = states.transition("leg", leg["status"], action)
        res = await conn.execute(
            update(models.ride_legs)
            .where(and_(models.ride_legs.c.id == leg["id"], models.ride_legs.c.status == leg["status"]))
            .values(status=new_status)
        )
        if res.rowcount != 1:
            raise StateConflictError(f"Leg for passenger {passenger_id} was modified concurrently")
        leg["status"] = new_status
        logger.info("update_passenger_leg_status: ride=%s passenger=%s -> %s", ride_id, passenger_id, new_status)

        if new_status == models.LEG_NO_SHOW:
            await _close_journeys(conn, {leg["journey_id"]}, "cancel")

        # no-show legs take no further part in the ride
        riding = [l for l in legs if l["status"] != models.LEG_NO_SHOW]
        statuses = [l["status"] for l in riding]
        if not riding:
            ride = await _apply(conn, ride, "passenger_no_show", cancelled_at=models.utcnow())
            published.append((events.RIDE_NO_SHOW, {"ride_id": ride_id, "status": ride["status"]}))
        if models.LEG_ON_BOARD in statuses and ride["status"] not in (models.RIDE_ONGOING, models.RIDE_COMPLETED):
            ride = await _apply(conn, ride, "board", started_at=models.utcnow())
            published.append((events.RIDE_STARTED, {"ride_id": ride_id, "status": ride["status"]}))
        if riding and all(s == models.LEG_DROPPED_OFF for s in statuses) and ride["status"] != models.RIDE_COMPLETED:
            final_fare = round(sum(l["fare_contribution"] for l in riding), 2)
            ride = await _finish(conn, ride, legs, final_fare, ride["distance_meters"])
            published.append((events.RIDE_COMPLETED, {"ride_id": ride_id, "status": ride["status"],
                                                      "final_fare": final_fare}))

    for event, payload in published:
        await events.publish(event, payload)
    ride["legs"] = legs
    return ride
