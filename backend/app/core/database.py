"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production, aiosqlite
for local runs and tests).

Provides:
    • Lazily built async engine and session factory
    • session_scope(): one committed unit of work per store operation
    • Base model for ORM entities

The engine is created on first use rather than at import time so that
tests (and tools that only need the ORM metadata) never open a pool
against the production URL.

Usage:
    from backend.app.core.database import get_session_factory, session_scope

    async with session_scope(get_session_factory(), "list_queue") as session:
        rows = (await session.execute(select(NotificationQueueRow))).scalars().all()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings
from backend.app.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: Dict[str, Any] = {"echo": echo, "future": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Engine / Session Factory ──
def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


# ── Unit of work ──
@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
    operation: str,
) -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit on success, roll back on error.

    Connectivity failures surface as StoreUnavailableError so callers (the
    scheduler, the API error handlers) can tell "database down" apart from
    programming errors, which propagate unchanged.
    """
    try:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    except (OperationalError, InterfaceError) as exc:
        logger.error("Store unavailable during %s: %s", operation, exc)
        raise StoreUnavailableError(operation, str(exc.orig or exc)) from exc


# ── Lifecycle ──
async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Registers the notification tables on Base.metadata
    from backend.app.notifications import orm  # noqa: F401

    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db() -> None:
    """Dispose engine connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None
