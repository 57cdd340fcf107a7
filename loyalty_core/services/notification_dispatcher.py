"""Fan-out of ledger and enrollment events to subscribed consumers.

Delivery is at-least-once per distinct ``dedupe_key`` for every active
subscription; consumers treat deliveries as idempotent by that key. Bursts of
events sharing a ``coalesce_key`` inside the coalescing window collapse into the
newest one, and a subscription never receives a version older than one it has
already seen for the same key.

Publishing never waits on a consumer. Channels whose ``send`` only buffers
(``inline = True``) are written directly; every other channel gets its own
outbox drained by a pump task, so a slow socket only delays itself.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger
from loyalty_core.core.metrics import record_notification
from loyalty_core.schemas.notification import NotificationEventRead
from loyalty_core.services.notification_channels import DeliveryChannel

logger = get_logger(__name__)

ALL_TARGETS = "*"


@dataclass(eq=False)
class Subscription:
    target_id: str
    channel: DeliveryChannel
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    active: bool = True
    delivered: int = 0
    failures: int = 0
    outbox: asyncio.Queue | None = field(default=None, repr=False)
    pump: asyncio.Task | None = field(default=None, repr=False)
    _last_versions: dict[str, int] = field(default_factory=dict, repr=False)

    @property
    def durable(self) -> bool:
        return bool(getattr(self.channel, "durable", False))

    @property
    def local_only(self) -> bool:
        return bool(getattr(self.channel, "local_only", False))

    def accepts(self, event: NotificationEventRead) -> bool:
        version = event.version
        if event.coalesce_key is None or version is None:
            return True
        last = self._last_versions.get(event.coalesce_key)
        return last is None or version > last

    def mark_routed(self, event: NotificationEventRead) -> None:
        version = event.version
        if event.coalesce_key is not None and version is not None:
            self._last_versions[event.coalesce_key] = version


class NotificationDispatcher:
    def __init__(
        self,
        coalesce_window_ms: int | None = None,
        dedupe_capacity: int | None = None,
        outbox_size: int | None = None,
        close_timeout: float = 5.0,
    ) -> None:
        window = settings.NOTIFICATION_COALESCE_WINDOW_MS if coalesce_window_ms is None else coalesce_window_ms
        self._window = max(window, 0) / 1000.0
        self._dedupe_capacity = dedupe_capacity or settings.NOTIFICATION_DEDUPE_CAPACITY
        self._outbox_size = outbox_size or settings.NOTIFICATION_QUEUE_MAXSIZE
        self._close_timeout = close_timeout
        self._seen: OrderedDict[str, bool] = OrderedDict()
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._pending: dict[tuple[str, str], tuple[NotificationEventRead, bool]] = {}
        self._timers: dict[tuple[str, str], asyncio.Task] = {}
        self._lock = asyncio.Lock()
        # Routing is short and never awaits a consumer, so one lock keeps
        # per-subscription order for every target.
        self._routing_lock = asyncio.Lock()

    # --- subscriptions ---

    async def subscribe(self, target_id: str, channel: DeliveryChannel) -> Subscription:
        subscription = Subscription(target_id=str(target_id), channel=channel)
        if not getattr(channel, "inline", False):
            subscription.outbox = asyncio.Queue(maxsize=self._outbox_size)
            subscription.pump = asyncio.create_task(self._pump(subscription))
        async with self._lock:
            self._subscriptions[subscription.target_id].append(subscription)
        logger.info(
            "Subscription opened",
            extra={"subscription_id": str(subscription.id), "target_id": subscription.target_id, "channel": channel.name},
        )
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        async with self._lock:
            self._remove(subscription)

    def _remove(self, subscription: Subscription) -> None:
        subscription.active = False
        subs = self._subscriptions.get(subscription.target_id)
        if subs and subscription in subs:
            subs.remove(subscription)
        if not subs:
            self._subscriptions.pop(subscription.target_id, None)
        if subscription.outbox is not None:
            _discard(subscription.outbox)
        if subscription.pump is not None and not subscription.pump.done():
            subscription.pump.cancel()

    def subscriptions_for(self, target_id: str) -> list[Subscription]:
        return list(self._subscriptions.get(str(target_id), []))

    # --- publishing ---

    async def publish(self, event: NotificationEventRead, *, relayed: bool = False) -> bool:
        """Accept an event for delivery. Returns False for duplicates.

        ``relayed`` marks events written by another process and picked up from
        the event log; ``local_only`` channels never receive those.
        """
        upgrade = False
        async with self._lock:
            seen_relayed = self._seen.get(event.dedupe_key)
            if seen_relayed is not None and (relayed or not seen_relayed):
                record_notification("duplicate")
                logger.debug("Duplicate notification dropped", extra={"dedupe_key": event.dedupe_key})
                return False
            if seen_relayed is not None:
                # The relay got here before the writer; only local_only channels still need it.
                self._seen[event.dedupe_key] = False
                upgrade = True
            else:
                self._remember(event.dedupe_key, relayed)

            if not upgrade and event.coalesce_key is not None and self._window > 0:
                key = (event.target_id, event.coalesce_key)
                current = self._pending.get(key)
                if current is not None:
                    record_notification("coalesced")
                    current_event, current_relayed = current
                    newest = event if _is_newer(event, current_event) else current_event
                    self._pending[key] = (newest, current_relayed and relayed)
                    return True
                self._pending[key] = (event, relayed)
                self._timers[key] = asyncio.create_task(self._flush_after(key))
                return True

        if upgrade:
            await self._route(event, relayed=False, local_only=True)
        else:
            await self._route(event, relayed=relayed)
        return True

    async def publish_all(self, events: list[NotificationEventRead]) -> None:
        for event in events:
            await self.publish(event)

    def _remember(self, dedupe_key: str, relayed: bool) -> None:
        self._seen[dedupe_key] = relayed
        while len(self._seen) > self._dedupe_capacity:
            self._seen.popitem(last=False)

    async def _flush_after(self, key: tuple[str, str]) -> None:
        await asyncio.sleep(self._window)
        await self._flush_key(key)

    async def _flush_key(self, key: tuple[str, str]) -> None:
        async with self._lock:
            pending = self._pending.pop(key, None)
            self._timers.pop(key, None)
        if pending is not None:
            event, relayed = pending
            await self._route(event, relayed=relayed)

    async def _flush_pending(self) -> None:
        async with self._lock:
            keys = list(self._pending)
            timers = [self._timers.pop(key) for key in keys if key in self._timers]
        for timer in timers:
            timer.cancel()
        for key in keys:
            await self._flush_key(key)

    async def flush(self) -> None:
        """Deliver every coalesced event now and wait until outboxes are empty."""
        await self._flush_pending()
        await self._drain_outboxes()

    async def _drain_outboxes(self) -> None:
        async with self._lock:
            outboxes = [
                subscription.outbox
                for subs in self._subscriptions.values()
                for subscription in subs
                if subscription.outbox is not None
            ]
        await asyncio.gather(*(outbox.join() for outbox in outboxes))

    # --- delivery ---

    async def _route(self, event: NotificationEventRead, *, relayed: bool, local_only: bool = False) -> None:
        async with self._routing_lock:
            async with self._lock:
                targets = self.subscriptions_for(event.target_id) + self.subscriptions_for(ALL_TARGETS)
            for subscription in targets:
                if not subscription.active:
                    continue
                if (relayed and subscription.local_only) or (local_only and not subscription.local_only):
                    continue
                if not subscription.accepts(event):
                    record_notification("stale")
                    continue
                subscription.mark_routed(event)
                if subscription.outbox is None:
                    await self._send(subscription, event)
                else:
                    self._enqueue(subscription, event)

    def _enqueue(self, subscription: Subscription, event: NotificationEventRead) -> None:
        outbox = subscription.outbox
        if outbox.full():
            dropped = outbox.get_nowait()
            outbox.task_done()
            record_notification("dropped")
            logger.warning(
                "Subscription outbox full, dropping oldest event",
                extra={"subscription_id": str(subscription.id), "dropped_sequence": dropped.sequence},
            )
        outbox.put_nowait(event)

    async def _pump(self, subscription: Subscription) -> None:
        outbox = subscription.outbox
        while True:
            event = await outbox.get()
            try:
                if subscription.active:
                    await self._send(subscription, event)
            finally:
                outbox.task_done()

    async def _send(self, subscription: Subscription, event: NotificationEventRead) -> None:
        context = {
            "subscription_id": str(subscription.id),
            "channel": subscription.channel.name,
            "dedupe_key": event.dedupe_key,
        }
        try:
            await subscription.channel.send(event)
        except Exception:
            record_notification("failed")
            subscription.failures += 1
            if subscription.durable:
                # Process-wide channels outlive a consumer outage; the event stays in the feed.
                logger.warning("Notification delivery failed, subscription kept", exc_info=True, extra=context)
                return
            logger.warning("Notification delivery failed, closing subscription", exc_info=True, extra=context)
            await self.unsubscribe(subscription)
            return
        subscription.delivered += 1
        record_notification("delivered")

    async def close(self) -> None:
        await self._flush_pending()
        try:
            await asyncio.wait_for(self._drain_outboxes(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning("Notification outboxes not drained before close", extra={"timeout": self._close_timeout})
        async with self._lock:
            subscriptions = [subscription for subs in self._subscriptions.values() for subscription in subs]
            for subscription in subscriptions:
                self._remove(subscription)
            self._subscriptions.clear()
        pumps = [subscription.pump for subscription in subscriptions if subscription.pump is not None]
        await asyncio.gather(*pumps, return_exceptions=True)


def _discard(outbox: asyncio.Queue) -> None:
    while not outbox.empty():
        outbox.get_nowait()
        outbox.task_done()


def _is_newer(candidate: NotificationEventRead, current: NotificationEventRead) -> bool:
    candidate_version, current_version = candidate.version, current.version
    if candidate_version is not None and current_version is not None:
        return candidate_version > current_version
    return candidate.sequence > current.sequence
