import logging
from redis.asyncio import Redis
from .config import settings

logger = logging.getLogger(__name__)

# Shared by the driver directory (positions, geo index) and event publishing
redis_client = Redis.from_url(settings.REDIS_URL, decode_responses=True)


async def ping() -> bool:
    try:
        return await redis_client.ping()
    except Exception as e:
        logger.warning("redis_ping_failed: %s", e)
        return False
