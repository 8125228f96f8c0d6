# db.py
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from mapmarked.settings import settings

# --- Configuration & Setup ---
logger = logging.getLogger(__name__)

# Base class for declarative models. All models in `models.py` inherit from this.
Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def normalize_database_url(url: str) -> str:
    """Maps Heroku/Render-style postgres URLs onto the asyncpg driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_for(url: str) -> AsyncEngine:
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        logger.info("Using SQLite order store.")
        return create_async_engine(url, echo=False)

    logger.info("Connecting order store to PostgreSQL.")
    # `pool_recycle` keeps idle connections from being cut by the DB/network.
    return create_async_engine(
        url,
        echo=False,
        pool_size=10,
        max_overflow=5,
        pool_timeout=30,
        pool_recycle=1800,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine_for(settings.DATABASE_URL)
    return _engine


def get_session_maker() -> async_sessionmaker:
    """Session factory bound to the configured engine (expire_on_commit off)."""
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_maker


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    # models must be imported so their tables are registered on Base.metadata
    from mapmarked import models  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Order store tables verified/created.")


async def dispose_engine() -> None:
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None
