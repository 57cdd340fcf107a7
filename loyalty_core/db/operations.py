# loyalty_core/db/operations.py
"""Common async session helpers."""

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession


def _coerce_iter(items: Iterable[Any] | None) -> list[Any] | None:
    if not items:
        return None
    return list(items)


async def flush_async(session: AsyncSession, *objects: Any) -> None:
    await session.flush(_coerce_iter(objects))


async def refresh_async(session: AsyncSession, *instances: Any, attribute_names: list[str] | None = None) -> None:
    for instance in instances:
        if attribute_names:
            await session.refresh(instance, attribute_names=attribute_names)
        else:
            await session.refresh(instance)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
