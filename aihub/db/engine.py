# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Async SQLAlchemy engine (asyncpg driver) and session factory.
#
# The engine is created lazily on first use so that importing the ORM models
# or running with the in-memory record store never opens a connection pool.
#
# SESSION LIFECYCLE:
# 1. Caller opens a session from `get_session_factory()`
# 2. Performs its queries / inserts
# 3. Commits explicitly (SqlRecordStore commits once per operation)
# 4. Session is closed on context exit; uncommitted work is rolled back
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from aihub.config import settings

logger = logging.getLogger(__name__)

_async_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """
    Lazily create and cache the async engine.

    Pool sizing applies to PostgreSQL only; other dialects (SQLite in local
    experiments) use their default pool.
    """
    global _async_engine
    if _async_engine is None:
        kwargs: dict = {"echo": settings.debug}
        if settings.database_url.startswith("postgresql"):
            kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)
        _async_engine = create_async_engine(settings.database_url, **kwargs)
        logger.info("Created async engine (dialect=%s)", _async_engine.dialect.name)
    return _async_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Lazily create and cache the session factory.

    expire_on_commit=False keeps loaded attributes readable after commit,
    which async code needs because lazy refreshes cannot run outside a
    session.
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a database session with commit-on-success semantics.

    Usage:
        async for session in get_async_session():
            session.add(obj)
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_all() -> None:
    """Create all tables. Development helper; production uses migrations."""
    from aihub.db.models import Base

    async with get_async_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema created")


async def dispose_engine() -> None:
    """Close every pooled connection (application shutdown)."""
    global _async_engine, _async_session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _async_session_factory = None
