"""
Engine and session factory.

SQLite (aiosqlite) is used for local development and tests; PostgreSQL
(asyncpg) in production. Pool sizing only applies to server databases.
"""

from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from costsentry.core.config import Settings, get_settings
from costsentry.db.base import Base

logger = structlog.get_logger()


def build_engine(url: Optional[str] = None, settings: Optional[Settings] = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = url or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is not set. Check your .env file.")

    pool_args: dict = {}
    if url.startswith("sqlite"):
        if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
            # One shared connection so every session sees the same in-memory database.
            pool_args["poolclass"] = StaticPool
            pool_args["connect_args"] = {"check_same_thread": False}
    elif settings.TESTING:
        pool_args["poolclass"] = NullPool
    else:
        pool_args["pool_size"] = settings.DB_POOL_SIZE
        pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW
        pool_args["pool_pre_ping"] = True
        pool_args["pool_recycle"] = 300

    engine = create_async_engine(url, echo=settings.DEBUG, **pool_args)
    logger.info("database_engine_created", dialect=engine.dialect.name)
    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: rows stay readable after commit without lazy loads.
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet (development and tests)."""
    # Register the mappers before create_all.
    import costsentry.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
