"""Delivery channels the dispatcher fans events out to.

A channel only receives finished events. None of them hold a reference to the
ledger or the enrollment workflow.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

from fastapi import WebSocket

from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger
from loyalty_core.schemas.notification import NotificationEventRead
from loyalty_core.services.event_bus import emit_loyalty_event

logger = get_logger(__name__)


class DeliveryChannel(Protocol):
    """Delivery target for one subscription.

    ``inline`` channels only buffer in ``send``. ``durable`` channels keep their
    subscription when a send fails. ``local_only`` channels skip events relayed
    from other processes.
    """

    name: str
    inline: bool
    durable: bool
    local_only: bool

    async def send(self, event: NotificationEventRead) -> None: ...


class QueueChannel:
    """In-process buffer consumed by SSE streams, tests and local listeners."""

    name = "queue"
    inline = True
    durable = False
    local_only = False

    def __init__(self, maxsize: int | None = None) -> None:
        self._queue: asyncio.Queue[NotificationEventRead] = asyncio.Queue(
            maxsize=maxsize or settings.NOTIFICATION_QUEUE_MAXSIZE
        )

    async def send(self, event: NotificationEventRead) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            # Consumers reconcile through the persisted feed by sequence.
            logger.warning(
                "Notification queue full, dropping oldest event",
                extra={"dropped_sequence": dropped.sequence, "target_id": dropped.target_id},
            )
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> NotificationEventRead:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def drain(self) -> list[NotificationEventRead]:
        items: list[NotificationEventRead] = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items


class WebSocketChannel:
    name = "websocket"
    inline = False
    durable = False
    local_only = False

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send(self, event: NotificationEventRead) -> None:
        await self._websocket.send_json(event.model_dump(mode="json"))


class BrokerChannel:
    """Forwards events to the message broker for out-of-process consumers."""

    name = "broker"
    inline = False
    durable = True
    # Each event is forwarded by the process that wrote it, not by every relay.
    local_only = True

    def __init__(self, emit: Callable[[str, dict[str, Any]], None] = emit_loyalty_event) -> None:
        self._emit = emit

    async def send(self, event: NotificationEventRead) -> None:
        # Publishing to the broker is blocking network I/O.
        await asyncio.to_thread(self._emit, event.type.value, event.model_dump(mode="json"))
