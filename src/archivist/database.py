"""
Database session management for async SQLAlchemy operations.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from ..config.settings import settings

logger = logging.getLogger(__name__)


def _engine_options(database_url: str) -> dict:
    """Pool options per backend.

    asyncpg gets a sized pool with statement timeouts. SQLite (local runs and
    the test suite) gets a fresh connection per session so concurrent sessions
    never share a transaction.
    """
    if database_url.startswith("sqlite"):
        return {
            "poolclass": NullPool,
            "connect_args": {"timeout": 30},
        }
    return {
        "pool_size": 20,
        "max_overflow": 30,
        "pool_pre_ping": True,    # Detect stale connections before use
        "pool_recycle": 3600,     # Recycle connections every hour
        "pool_timeout": 30,       # Wait max 30s for connection from pool
        "connect_args": {
            "command_timeout": 30,  # Timeout for individual queries (asyncpg)
            "server_settings": {
                "statement_timeout": "30000",  # PostgreSQL statement timeout (ms)
            },
        },
    }


engine = create_async_engine(
    settings.database_url,
    echo=False,
    **_engine_options(settings.database_url),
)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db():
    """Initialize database tables."""
    # Import models so every table is registered on SQLModel.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def drop_db():
    """Drop all tables (test teardown)."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()


def get_pool_status() -> dict:
    """Connection pool counters for /health."""
    pool = engine.pool
    if isinstance(pool, NullPool):
        return {"pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}
    return {
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    Commits on clean exit, rolls back and re-raises on error. PostgreSQL
    statement_timeout (30s) bounds stuck transactions at the database level,
    so commit() is never wrapped in asyncio.wait_for().
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database session error, rolling back: {e}")
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions.

    Use get_session() for non-FastAPI code (worker, agents, scheduler).
    Use get_db() only as a FastAPI Depends() injection.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database session error, rolling back: {e}")
            await session.rollback()
            raise
