"""Matching Engine: rank available drivers for a trip request.

A pure read of the Driver Directory. No candidates is an empty list, never an
error; only malformed input raises.
"""
from typing import Optional, Tuple, List
from sqlalchemy import select, and_
import logging

from .config import settings
from . import directory, models
from .errors import NotFoundError, StateConflictError, ValidationError

logger = logging.getLogger(__name__)

WEIGHT_DISTANCE = 0.6
WEIGHT_RATING = 0.3
WEIGHT_VEHICLE_TYPE = 0.1
MAX_RATING = 5.0


def score_driver(distance_km: float, radius_km: float, rating: float,
                 vehicle_type: Optional[str], preferred_vehicle_type: Optional[str]) -> Tuple[float, dict]:
    distance_score = 1 - distance_km / radius_km
    rating_score = (rating or 0.0) / MAX_RATING
    vehicle_type_score = 1.0 if preferred_vehicle_type and vehicle_type == preferred_vehicle_type else 0.5
    score = (
        WEIGHT_DISTANCE * distance_score
        + WEIGHT_RATING * rating_score
        + WEIGHT_VEHICLE_TYPE * vehicle_type_score
    )
    breakdown = {
        "distance_score": distance_score,
        "rating_score": rating_score,
        "vehicle_type_score": vehicle_type_score,
    }
    return score, breakdown


def is_restricted_eligible(driver: dict) -> bool:
    # both the driver's declared gender and the opt-in are required
    gender = (driver.get("gender") or "").lower()
    return gender == settings.RESTRICTED_DRIVER_GENDER and bool(driver.get("accepts_restricted_rides"))


async def find_matches(conn, origin: Tuple[float, float], preferred_vehicle_type: Optional[str] = None,
                       restricted: bool = False, radius_km: float = None) -> List[dict]:
    """Return ``[{driver, score, distance_km, breakdown}]`` ordered best first."""
    if origin is None:
        raise ValidationError("origin coordinates are required")
    origin = directory.validate_point(origin[0], origin[1], "origin")
    radius_km = settings.MATCH_RADIUS_KM if radius_km is None else radius_km
    if radius_km <= 0:
        raise ValidationError("search radius must be positive")

    nearby = await directory.drivers_within(origin, radius_km)
    if not nearby:
        logger.info("find_matches: no drivers within %.2fkm of %s", radius_km, origin)
        return []
    distances = dict(nearby)

    conditions = [models.drivers.c.id.in_(list(distances)), models.drivers.c.available.is_(True)]
    async with conn.begin():
        rows = (await conn.execute(select(models.drivers).where(and_(*conditions)))).all()

    matches = []
    for row in rows:
        driver = dict(row._mapping)
        if restricted and not is_restricted_eligible(driver):
            continue
        distance_km = distances[driver["id"]]
        score, breakdown = score_driver(distance_km, radius_km, driver["rating"],
                                        driver["vehicle_type"], preferred_vehicle_type)
        matches.append({"driver": driver, "score": score, "distance_km": distance_km, "breakdown": breakdown})

    matches.sort(key=lambda m: (-m["score"], m["distance_km"]))
    logger.info("find_matches: origin=%s restricted=%s candidates=%d matched=%d",
                origin, restricted, len(nearby), len(matches))
    return matches


async def match_journey(conn, journey_id: int, radius_km: float = None) -> List[dict]:
    """Rank drivers for a stored journey that is still open for bids."""
    async with conn.begin():
        row = (await conn.execute(select(models.journeys).where(models.journeys.c.id == journey_id))).first()
    if not row:
        raise NotFoundError(f"Journey {journey_id} not found")
    journey = row._mapping
    if journey["status"] != models.JOURNEY_OPEN:
        raise StateConflictError(f"Journey {journey_id} is {journey['status']}, not open")
    return await find_matches(
        conn,
        (journey["origin_lat"], journey["origin_lon"]),
        preferred_vehicle_type=journey["preferred_vehicle_type"],
        restricted=bool(journey["is_restricted"]),
        radius_km=radius_km,
    )
