# loyalty_core/db/session_async.py
"""Async SQLAlchemy session utilities."""

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from loyalty_core.core.config import settings

T = TypeVar("T")

SessionFactory = Callable[[], AsyncSession]


def _engine_options() -> dict[str, Any]:
    if settings.ASYNC_DATABASE_URL.startswith("sqlite"):
        # Each writer gets its own connection so SQLite's file lock serializes
        # them; the busy timeout makes contenders wait instead of failing.
        return {
            "poolclass": NullPool,
            "connect_args": {"timeout": settings.SQLITE_BUSY_TIMEOUT_SECONDS},
        }
    return {"pool_pre_ping": True}


async_engine: AsyncEngine = create_async_engine(settings.ASYNC_DATABASE_URL, **_engine_options())

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    expire_on_commit=False,
    autoflush=False,
)


async def get_async_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that yields an AsyncSession."""
    async with AsyncSessionLocal() as session:
        yield session


async def rollback(session: AsyncSession) -> None:
    """Rollback active transaction if needed."""
    if session.in_transaction():
        await session.rollback()


async def run_in_transaction(
    operation: Callable[[AsyncSession], Awaitable[T]],
    session_factory: SessionFactory = AsyncSessionLocal,
) -> T:
    """Execute an async operation within a managed transaction."""
    async with session_factory() as session:
        try:
            result = await operation(session)
            await session.commit()
            return result
        except Exception:
            await rollback(session)
            raise
