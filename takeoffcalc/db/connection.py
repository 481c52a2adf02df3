"""Database connection and session management for TakeoffCalc.

Provides async SQLAlchemy session management with connection pooling.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from takeoffcalc.config import get_config
from takeoffcalc.db.models import Base

# Global engine instance
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create singleton async engine."""
    global _engine

    if _engine is None:
        db_config = get_config().db

        engine_kwargs: dict = {"echo": db_config.echo}

        # SQLite doesn't support connection pooling parameters
        if "sqlite" not in db_config.url.lower():
            engine_kwargs.update({
                "pool_size": db_config.pool_size,
                "max_overflow": db_config.pool_max_overflow,
                "pool_timeout": db_config.pool_timeout,
                "pool_pre_ping": True,
                "pool_recycle": 3600,
            })

        _engine = create_async_engine(db_config.url, **engine_kwargs)

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create session factory."""
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )

    return _session_factory


async def init_db(drop: bool = False) -> None:
    """Create all tables (development/testing convenience)."""
    engine = get_engine()

    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database engine and dispose connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
