from datetime import datetime
import logging

from .config import settings
from .directory import haversine_km
from . import models

logger = logging.getLogger(__name__)

RATE_PER_KM = 50.0
RATE_PER_MINUTE = 5.0
# straight-line distance at an assumed city average speed stands in for a routed duration
AVERAGE_SPEED_KMH = 25.0

PEAK_HOUR_MULTIPLIER = 1.25
WEEKEND_MULTIPLIER = 1.15
PEAK_HOURS = (7, 8, 9, 17, 18, 19)

VEHICLE_PREMIUMS = {
    "car": 1.0,
    "van": 1.5,
    "suv": 1.4,
    "tuktuk": 0.8,
    "bike": 0.6,
    "motorcycle": 0.6,
}

SUGGESTION_RANGE = 0.15
ROUND_TO = 50


def _round(value: float) -> float:
    return float(round(value / ROUND_TO) * ROUND_TO)


def time_multiplier(when: datetime) -> float:
    if when.hour in PEAK_HOURS:
        return PEAK_HOUR_MULTIPLIER
    if when.weekday() >= 5:
        return WEEKEND_MULTIPLIER
    return 1.0


def suggest_bid(journey: dict, now: datetime = None) -> dict:
    """Suggested min/recommended/max bid for a journey, rounded to the nearest 50."""
    distance_km = haversine_km(
        (journey["origin_lat"], journey["origin_lon"]),
        (journey["destination_lat"], journey["destination_lon"]),
    )
    duration_min = distance_km / AVERAGE_SPEED_KMH * 60
    base = distance_km * RATE_PER_KM + duration_min * RATE_PER_MINUTE

    when = models.as_utc(journey.get("scheduled_at")) or now or models.utcnow()
    premium = VEHICLE_PREMIUMS.get(journey.get("preferred_vehicle_type") or "car", 1.0)
    recommended = max(base * time_multiplier(when) * premium, settings.MIN_FARE)
    spread = recommended * SUGGESTION_RANGE

    suggestion = {
        "min_bid": _round(recommended - spread),
        "recommended_bid": _round(recommended),
        "max_bid": _round(recommended + spread),
        "currency": settings.CURRENCY,
    }
    logger.debug("suggest_bid: journey=%s distance_km=%.2f base=%.2f suggestion=%s",
                 journey.get("id"), distance_km, base, suggestion)
    return suggestion
