"""
Engines for the build pipeline.

Stages run on the async engine through ``BuildStore``; the sync engine is only
used by ``kgbuild db init`` to create the schema.
"""

from __future__ import annotations

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import get_settings
from src.db.models.base import Base

settings = get_settings()


def _get_async_url(url: str) -> str:
    """Convert sync postgres URL to asyncpg URL when needed."""
    if url.startswith("postgresql+asyncpg://"):
        return url
    if url.startswith("postgresql+psycopg2://"):
        return url.replace("postgresql+psycopg2://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def init_db() -> int:
    """
    Create every table under src/db/models that does not exist yet.

    ``gen_random_uuid()`` defaults need pgcrypto on servers older than 13.
    Returns the number of tables known to the metadata.
    """
    engine = create_engine(settings.database_url, echo=settings.log_level == "DEBUG", pool_pre_ping=True)
    try:
        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS pgcrypto"))
            Base.metadata.create_all(bind=conn)
    finally:
        engine.dispose()
    count = len(Base.metadata.tables)
    logger.info("Database tables initialized ({} tables)", count)
    return count


# ========================================
# Async Support (build stages)
# ========================================

_async_engine: AsyncEngine | None = None
_AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _get_async_engine() -> AsyncEngine:
    """Get or create async engine (lazy initialization)."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_async_engine(
            _get_async_url(settings.database_url),
            echo=settings.log_level == "DEBUG",
            pool_pre_ping=True,
        )
    return _async_engine


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create async session factory."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = async_sessionmaker(
            bind=_get_async_engine(),
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
    return _AsyncSessionLocal


async def dispose_async_engine() -> None:
    """Close pooled async connections (end of a CLI run)."""
    global _async_engine, _AsyncSessionLocal
    if _async_engine is not None:
        await _async_engine.dispose()
    _async_engine = None
    _AsyncSessionLocal = None
