from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.engine import make_url
from contextlib import asynccontextmanager
import logging
from .config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy asyncio needs an async driver: postgresql+asyncpg in production, sqlite+aiosqlite locally
if settings.DATABASE_URL.startswith("postgresql://"):
    raise RuntimeError(
        "DATABASE_URL must name an async driver (postgresql+asyncpg://...); "
        f"got {make_url(settings.DATABASE_URL).render_as_string(hide_password=True)}"
    )


def _engine_options(url: str) -> dict:
    options = {"echo": settings.DB_ECHO}
    if make_url(url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            pool_pre_ping=True,
        )
    return options


engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))


@asynccontextmanager
async def get_conn():
    """Connection for one request or job. Services open their own ``conn.begin()`` units on it."""
    async with engine.connect() as conn:
        yield conn


async def init_db():
    from .models import metadata
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("init_db: tables ready on %s", engine.url.render_as_string(hide_password=True))


async def dispose_db():
    await engine.dispose()
