"""Standalone matching service: rank nearby drivers for an ad-hoc pickup point."""
from fastapi import FastAPI, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import List, Optional
import logging
from . import cache, db, matching
from .errors import DomainError
from .logging_setup import configure_logging

# ensure logging is configured when run standalone
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Driver Discovery Service")


async def get_conn():
    async with db.get_conn() as conn:
        yield conn


@app.exception_handler(DomainError)
async def domain_error_handler(request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


class MatchRequest(BaseModel):
    """Pickup point and constraints to rank drivers for."""
    pickup_lat: float
    pickup_lon: float
    preferred_vehicle_type: Optional[str] = None
    restricted: bool = False
    max_distance_km: Optional[float] = None  # defaults to MATCH_RADIUS_KM


class MatchedDriver(BaseModel):
    driver_id: int
    distance_km: float
    score: float


class MatchResponse(BaseModel):
    """Ranked drivers, best first; empty when nobody qualifies."""
    drivers: List[MatchedDriver]


@app.post("/match", response_model=MatchResponse)
async def find_drivers(req: MatchRequest, conn=Depends(get_conn)):
    logger.info("match_request: pickup=(%s,%s) restricted=%s max_distance=%s",
                req.pickup_lat, req.pickup_lon, req.restricted, req.max_distance_km)
    matches = await matching.find_matches(
        conn,
        (req.pickup_lat, req.pickup_lon),
        preferred_vehicle_type=req.preferred_vehicle_type,
        restricted=req.restricted,
        radius_km=req.max_distance_km,
    )
    return MatchResponse(drivers=[
        MatchedDriver(driver_id=m["driver"]["id"], distance_km=m["distance_km"], score=m["score"])
        for m in matches
    ])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "redis": await cache.ping()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8001)
