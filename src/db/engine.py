"""Database and Redis wiring.

One async engine (asyncpg) and session factory for the app, the audit
subscriber and the CLI scripts; one Redis client for the rate limiter.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config import settings

logger = logging.getLogger(__name__)

engine: AsyncEngine = create_async_engine(
    settings.db.database_url,
    echo=settings.db.echo_sql,
    pool_size=settings.db.pool_size,
    max_overflow=settings.db.pool_size * 2,
    pool_pre_ping=True,
    pool_recycle=3600,
)

# expire_on_commit=False: routes read memberships after get_session commits
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

redis_client: aioredis.Redis = aioredis.from_url(settings.db.redis_url, decode_responses=True)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: commit after the handler, roll back if it raises."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_redis() -> aioredis.Redis:
    return redis_client


@contextlib.asynccontextmanager
async def script_session() -> AsyncGenerator[AsyncSession, None]:
    """Session for a one-shot CLI command; the pool is disposed on exit."""
    try:
        async with async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    finally:
        await engine.dispose()


async def init_db() -> None:
    """Check the connection. Outside production, also create missing tables."""
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        if not settings.is_production:
            import src.models  # noqa: F401
            from src.models.base import Base

            await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready (%s)", "migrations" if settings.is_production else "create_all")


async def close_db() -> None:
    await engine.dispose()
    await redis_client.aclose()


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    await init_db()
    try:
        yield
    finally:
        await close_db()
