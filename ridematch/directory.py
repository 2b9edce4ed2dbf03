"""Driver Directory: live positions in Redis, driver attributes in the database.

Positions are written by the location-ingest side (``update_driver_location``)
and only read by matching. Reads never evict anything; stale entries are removed
by the periodic ``cleanup_stale_drivers`` task.
"""
from math import radians, cos, sin, asin, sqrt
from datetime import datetime, timezone
from typing import Optional, List, Tuple
from sqlalchemy import select, insert, update
import logging

from .config import settings
from .cache import redis_client
from .errors import NotFoundError, ValidationError
from . import models

logger = logging.getLogger(__name__)

GEO_KEY = "drivers_geo"


def driver_key(driver_id: int) -> str:
    return f"driver:{driver_id}"


def haversine_km(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    # convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    # haversine
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    km = 6371 * c
    return km


def validate_point(lat, lon, label: str = "location") -> Tuple[float, float]:
    if lat is None or lon is None:
        raise ValidationError(f"{label} coordinates are required")
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} coordinates must be numbers") from None
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise ValidationError(f"{label} coordinates out of range: ({lat}, {lon})")
    return lat, lon


async def update_driver_location(driver_id: int, lat: float, lon: float):
    lat, lon = validate_point(lat, lon)
    key = driver_key(driver_id)
    # store lat/lon in hash for quick lookup with timestamp
    await redis_client.hset(key, mapping={
        "lat": lat,
        "lon": lon,
        "timestamp": datetime.now(timezone.utc).timestamp()
    })
    await redis_client.expire(key, settings.DRIVER_LOCATION_TTL_SEC)
    await redis_client.execute_command("GEOADD", GEO_KEY, lon, lat, driver_id)
    logger.debug("update_driver_location: driver=%s lat=%s lon=%s", driver_id, lat, lon)


async def invalidate_driver_cache(driver_id: int):
    """Remove driver from all caches (hash and geo index)."""
    await redis_client.delete(driver_key(driver_id))
    await redis_client.zrem(GEO_KEY, driver_id)
    logger.info("cache_invalidated: driver=%s", driver_id)


async def get_driver_location(driver_id: int, max_age_sec: int = None) -> Optional[Tuple[float, float]]:
    """Get driver location from cache with freshness validation.

    Returns (lat, lon), or None when the driver has no position or it is older
    than ``max_age_sec`` (defaults to the location TTL).
    """
    max_age_sec = max_age_sec or settings.DRIVER_LOCATION_TTL_SEC
    data = await redis_client.hgetall(driver_key(driver_id))
    if not data:
        return None
    try:
        if "timestamp" in data:
            age = datetime.now(timezone.utc).timestamp() - float(data["timestamp"])
            if age > max_age_sec:
                logger.debug("get_driver_location: driver=%s location stale (age=%.1fs)", driver_id, age)
                return None
        return (float(data.get("lat")), float(data.get("lon")))
    except (TypeError, ValueError) as e:
        logger.warning("get_driver_location: driver=%s error parsing data: %s", driver_id, e)
        return None


async def cleanup_stale_drivers():
    """Background task to remove drivers whose position hash has expired from the geo index."""
    try:
        all_drivers = await redis_client.zrange(GEO_KEY, 0, -1)
        removed_count = 0
        for driver_id in all_drivers:
            if not await redis_client.exists(driver_key(driver_id)):
                await redis_client.zrem(GEO_KEY, driver_id)
                removed_count += 1
        if removed_count > 0:
            logger.info("cleanup_stale_drivers: removed %d stale drivers from geo index", removed_count)
    except Exception as e:
        logger.error("cleanup_stale_drivers: error during cleanup: %s", e)


async def drivers_within(origin: Tuple[float, float], radius_km: float) -> List[Tuple[int, float]]:
    """Spatial range query: (driver_id, distance_km) for every fresh position within radius_km.

    Redis GEORADIUS narrows the candidates; distances are recomputed with
    haversine_km and anything beyond the radius is dropped.
    """
    lat, lon = origin
    res = await redis_client.execute_command("GEORADIUS", GEO_KEY, lon, lat, radius_km, "km", "WITHDIST", "ASC")
    found = []
    for entry in res or []:
        member = entry[0]
        if isinstance(member, bytes):
            member = member.decode()
        try:
            did = int(member)
        except (TypeError, ValueError):
            logger.warning("drivers_within: skipping malformed geo member %r", member)
            continue
        loc = await get_driver_location(did)
        if not loc:
            continue
        dist = haversine_km(origin, loc)
        if dist <= radius_km:
            found.append((did, dist))
    return found


async def register_driver(conn, driver_id: int, name: str = None, vehicle_type: str = None,
                          rating: float = 0.0, gender: str = None,
                          accepts_restricted_rides: bool = False, available: bool = True) -> dict:
    """Create or refresh the directory profile for a driver."""
    values = dict(
        name=name,
        vehicle_type=vehicle_type,
        rating=rating,
        gender=gender.lower() if gender else None,
        accepts_restricted_rides=accepts_restricted_rides,
        available=available,
    )
    async with conn.begin():
        existing = (await conn.execute(select(models.drivers.c.id).where(models.drivers.c.id == driver_id))).first()
        if existing:
            await conn.execute(update(models.drivers).where(models.drivers.c.id == driver_id).values(**values))
        else:
            await conn.execute(insert(models.drivers).values(id=driver_id, total_rides=0, **values))
        row = (await conn.execute(select(models.drivers).where(models.drivers.c.id == driver_id))).first()
    logger.info("register_driver: driver=%s vehicle=%s available=%s", driver_id, vehicle_type, available)
    return dict(row._mapping)


async def set_driver_availability(conn, driver_id: int, available: bool) -> dict:
    async with conn.begin():
        res = await conn.execute(
            update(models.drivers).where(models.drivers.c.id == driver_id).values(available=available)
        )
        if res.rowcount != 1:
            raise NotFoundError(f"Driver {driver_id} not found")
    if not available:
        # offline drivers drop out of the geo index until their next location ping
        await invalidate_driver_cache(driver_id)
    logger.info("set_driver_availability: driver=%s available=%s", driver_id, available)
    return {"driver_id": driver_id, "available": available}
