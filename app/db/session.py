"""
Database Session Management
===========================

One async engine per process and one ``AsyncSession`` per request.

Webhook and receipt handlers share that session: the event claim, the
record mutation and the outcome update commit together, so a crash
between them leaves nothing half-applied. Every connection carries a
``lock_timeout`` so a request stuck behind another delivery's per-user
advisory lock fails instead of holding a pool slot forever.
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _connect_args() -> dict:
    # asyncpg applies server_settings on every new connection
    return {
        "server_settings": {
            "application_name": "billing-reconciler",
            "lock_timeout": str(settings.DB_LOCK_TIMEOUT_MS),
        }
    }


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine

    if _engine is not None:
        return _engine

    url = settings.database_url_async
    if not url:
        raise ValueError("DATABASE_URL is not set")

    _engine = create_async_engine(
        url,
        echo=settings.is_development,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=300,
        connect_args=_connect_args(),
    )
    logger.debug(
        "Created engine pool_size=%d max_overflow=%d",
        settings.DB_POOL_SIZE,
        settings.DB_MAX_OVERFLOW,
    )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory

    if _session_factory is None:
        # Records stay readable after commit; responses are built from them
        _session_factory = async_sessionmaker(
            get_engine(),
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Handlers that already committed leave nothing for the final commit to
    do; any exception rolls the whole request back and re-raises.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Open one connection at startup so a bad DATABASE_URL fails fast."""
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database connections closed")
