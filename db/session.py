# db/session.py
from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.engine import dispose_engine, get_engine

_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Shared factory for short-lived sessions. Workers open one session per
    claim / progress report / resolution; request handlers go through get_db.
    """
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def close_sessions() -> None:
    """Drop the factory and dispose the engine it was bound to (process shutdown)."""
    global _session_factory
    _session_factory = None
    await dispose_engine()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # Routes that write commit explicitly; anything left uncommitted on error is rolled back.
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
