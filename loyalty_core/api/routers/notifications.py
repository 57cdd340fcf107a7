from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_core.api.deps import get_actor_business_id, get_actor_customer_id, get_dispatcher
from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger
from loyalty_core.db.operations import utcnow
from loyalty_core.db.session_async import get_async_db, rollback
from loyalty_core.schemas.notification import MarkReadRequest, MarkReadResult, NotificationEventRead, NotificationFeed
from loyalty_core.services.exceptions import ForbiddenError
from loyalty_core.services.notification_channels import QueueChannel, WebSocketChannel
from loyalty_core.services.notification_dispatcher import ALL_TARGETS, NotificationDispatcher
from loyalty_core.services.notification_events import (
    BUSINESS_TARGET_PREFIX,
    business_target,
    count_unread,
    list_events,
    mark_read,
    to_read,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

HEARTBEAT_SECONDS = 15.0


def authorize_target(target_id: str, actor_customer_id: str | None, actor_business_id: str | None) -> None:
    """Customers follow themselves, businesses follow ``business:<id>``; ``*`` is for trusted operators."""
    if target_id == ALL_TARGETS:
        if actor_customer_id is not None or actor_business_id is not None:
            raise ForbiddenError("The all-targets stream is not available to customers or businesses")
        return
    if target_id.startswith(BUSINESS_TARGET_PREFIX):
        if actor_customer_id is not None:
            raise ForbiddenError("Customers cannot follow business notifications")
        if actor_business_id is not None and business_target(actor_business_id) != target_id:
            raise ForbiddenError("Businesses can only follow their own notifications")
        return
    if actor_customer_id is not None and actor_customer_id != target_id:
        raise ForbiddenError("Customers can only follow their own notifications")


def _stored_target(target_id: str) -> str | None:
    return None if target_id == ALL_TARGETS else target_id


def format_sse(event: NotificationEventRead) -> str:
    data = json.dumps(event.model_dump(mode="json"))
    return f"id: {event.sequence}\nevent: {event.type.value}\ndata: {data}\n\n"


async def sse_events(
    channel: QueueChannel,
    backlog: list[NotificationEventRead],
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """Persisted backlog first, then live events, skipping anything already sent."""
    last_sequence = 0
    for event in backlog:
        last_sequence = max(last_sequence, event.sequence)
        yield format_sse(event)
    while not await is_disconnected():
        try:
            event = await channel.get(timeout=heartbeat)
        except asyncio.TimeoutError:
            yield ": keep-alive\n\n"
            continue
        if event.sequence <= last_sequence:
            continue
        last_sequence = event.sequence
        yield format_sse(event)


@router.get("/{target_id}", response_model=NotificationFeed)
async def notification_feed(
    target_id: str,
    after: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1, le=500),
    unread_only: bool = Query(default=False),
    requires_action: bool = Query(default=False),
    db: AsyncSession = Depends(get_async_db),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
    actor_business_id: str | None = Depends(get_actor_business_id),
):
    authorize_target(target_id, actor_customer_id, actor_business_id)
    stored = _stored_target(target_id)
    rows = await list_events(
        db,
        stored,
        after=after,
        limit=limit or settings.NOTIFICATION_FEED_PAGE_SIZE,
        unread_only=unread_only,
        requires_action=requires_action,
    )
    items = [to_read(row) for row in rows]
    return NotificationFeed(
        items=items,
        next_cursor=items[-1].sequence if items else after,
        unread_count=await count_unread(db, stored),
    )


@router.post("/{target_id}/read", response_model=MarkReadResult)
async def mark_notifications_read(
    target_id: str,
    payload: MarkReadRequest,
    db: AsyncSession = Depends(get_async_db),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
    actor_business_id: str | None = Depends(get_actor_business_id),
):
    if target_id == ALL_TARGETS:
        raise ForbiddenError("Read state is kept per target")
    authorize_target(target_id, actor_customer_id, actor_business_id)
    try:
        updated = await mark_read(db, target_id, utcnow(), sequences=payload.sequences, up_to=payload.up_to)
        await db.commit()
    except Exception:
        await rollback(db)
        raise
    logger.info("Notifications marked read", extra={"target_id": target_id, "updated": updated})
    return MarkReadResult(updated=updated)


@router.get("/{target_id}/stream")
async def notification_stream(
    target_id: str,
    request: Request,
    after: int | None = Query(default=None, ge=0),
    last_event_id: str | None = Header(default=None),
    db: AsyncSession = Depends(get_async_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
    actor_business_id: str | None = Depends(get_actor_business_id),
):
    authorize_target(target_id, actor_customer_id, actor_business_id)
    cursor = after
    if cursor is None and last_event_id and last_event_id.isdigit():
        cursor = int(last_event_id)

    channel = QueueChannel()
    subscription = await dispatcher.subscribe(target_id, channel)
    backlog: list[NotificationEventRead] = []
    if cursor is not None:
        rows = await list_events(db, _stored_target(target_id), after=cursor, limit=settings.NOTIFICATION_FEED_PAGE_SIZE)
        backlog = [to_read(row) for row in rows]

    async def body() -> AsyncIterator[str]:
        try:
            async for chunk in sse_events(channel, backlog, request.is_disconnected):
                yield chunk
        finally:
            await dispatcher.unsubscribe(subscription)

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.websocket("/{target_id}/ws")
async def notification_ws(
    websocket: WebSocket,
    target_id: str,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        authorize_target(
            target_id,
            get_actor_customer_id(websocket.headers.get("x-customer-id")),
            get_actor_business_id(websocket.headers.get("x-business-id")),
        )
    except ForbiddenError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    subscription = await dispatcher.subscribe(target_id, WebSocketChannel(websocket))
    await websocket.send_json({"event": "subscribed", "target_id": target_id})
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Notification websocket closed", extra={"target_id": target_id})
    finally:
        await dispatcher.unsubscribe(subscription)
