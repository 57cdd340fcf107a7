"""Live delivery of events written by other processes.

Writers publish their own events straight into the local dispatcher, which only
reaches subscribers connected to the same process. The relay tails the
``notification_events`` log by sequence and republishes every new row, so
events from Celery workers and sibling API workers reach local subscribers too.
The dispatcher's dedupe drops the rows this process already published.
"""

from __future__ import annotations

import asyncio

from sqlalchemy import func, select

from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger
from loyalty_core.db.session_async import SessionFactory
from loyalty_core.models.notification import NotificationEvent
from loyalty_core.services.notification_dispatcher import NotificationDispatcher
from loyalty_core.services.notification_events import to_read

logger = get_logger(__name__)


class EventRelay:
    def __init__(
        self,
        session_factory: SessionFactory,
        dispatcher: NotificationDispatcher,
        *,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        lookback: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._interval = interval_seconds or settings.NOTIFICATION_RELAY_INTERVAL_SECONDS
        self._batch_size = batch_size or settings.NOTIFICATION_RELAY_BATCH_SIZE
        # Sequences are allocated before commit, so a row can land behind the
        # cursor; rereading a short tail catches it.
        self._lookback = settings.NOTIFICATION_RELAY_LOOKBACK if lookback is None else lookback
        self._cursor: int | None = None

    @property
    def cursor(self) -> int | None:
        return self._cursor

    async def prime(self) -> int:
        """Start from the current end of the log; older events are served by the feed."""
        async with self._session_factory() as session:
            latest = await session.scalar(select(func.max(NotificationEvent.sequence)))
        self._cursor = int(latest or 0)
        return self._cursor

    async def poll_once(self) -> int:
        """Republish rows past the cursor. Returns how many were new to this process."""
        if self._cursor is None:
            await self.prime()
        start = max(self._cursor - self._lookback, 0)
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationEvent)
                .where(NotificationEvent.sequence > start)
                .order_by(NotificationEvent.sequence)
                .limit(self._batch_size + self._lookback)
            )
            rows = list(result.scalars().all())

        published = 0
        for row in rows:
            if await self._dispatcher.publish(to_read(row), relayed=True):
                published += 1
            self._cursor = max(self._cursor, row.sequence)
        if published:
            logger.debug("Relayed notification events", extra={"count": published, "cursor": self._cursor})
        return published

    async def run(self) -> None:
        await self.prime()
        logger.info("Notification relay started", extra={"cursor": self._cursor})
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Notification relay poll failed", extra={"cursor": self._cursor})
            await asyncio.sleep(self._interval)
