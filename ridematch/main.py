from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .routes import router as api_router
from .logging_setup import configure_logging
from .config import settings
from .errors import DomainError
from . import bidding, cache, db, directory
import logging
import asyncio

# configure file logging for the app
configure_logging()
logger = logging.getLogger("ridematch.main")

app = FastAPI(title="Ridematch - Ride Matching & Bidding API")

# Enable CORS for UI dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/v1")


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    logger.info("domain_error: path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


async def periodic_cache_cleanup():
    """Drop expired driver positions from the geo index every 60 seconds."""
    while True:
        await asyncio.sleep(60)
        await directory.cleanup_stale_drivers()


async def periodic_bid_expiry():
    while True:
        await asyncio.sleep(settings.BID_EXPIRY_SWEEP_SEC)
        try:
            async with db.get_conn() as conn:
                await bidding.expire_bids(conn)
        except Exception as e:
            logger.error("periodic_bid_expiry: sweep failed: %s", e)


@app.on_event("startup")
async def _startup():
    logger.info("Starting Ridematch API application")
    await db.init_db()
    if not await cache.ping():
        logger.warning("redis unreachable at startup; matching and events are degraded until it returns")
    asyncio.create_task(periodic_cache_cleanup())
    asyncio.create_task(periodic_bid_expiry())
    logger.info("Started periodic cache cleanup and bid expiry tasks")


@app.on_event("shutdown")
async def _shutdown():
    await db.dispose_db()
    logger.info("Ridematch API stopped")


@app.get("/")
async def read_root():
    return {"message": "Ridematch API"}
