"""
Database layer — async PostgreSQL via SQLAlchemy 2.0 + asyncpg.

Provides:
    • Lazily created async engine (connection pool)
    • Declarative base for the table definitions in ``core.tables``
    • The process-wide ``Store`` used by route dependencies
    • Create / dispose lifecycle hooks

Usage:
    from resqzone.app.core.database import get_store

    store = get_store()
    rows = await store.fetch_all(select(User.id))
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from resqzone.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all table definitions."""
    pass


# ── Engine (created on first use) ──
_engine: Optional[AsyncEngine] = None
_store = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            echo=settings.DATABASE_ECHO,
            pool_pre_ping=True,
        )
        logger.info("Database engine created: %s", settings.database_dsn_redacted)
    return _engine


def get_store():
    """FastAPI dependency: the shared Store bound to the engine."""
    global _store
    if _store is None:
        from resqzone.app.core.store import Store
        _store = Store(get_engine())
    return _store


# ── Lifecycle ──
async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    from resqzone.app.core import tables  # noqa: F401  registers metadata

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db() -> None:
    """Dispose engine connections."""
    global _engine, _store
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _store = None
        logger.info("Database connections closed")
