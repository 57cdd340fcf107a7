# tests/test_notification_dispatcher.py
import asyncio

import pytest

from loyalty_core.services.notification_channels import BrokerChannel, QueueChannel
from loyalty_core.services.notification_dispatcher import ALL_TARGETS, NotificationDispatcher


class FailingChannel:
    name = "failing"

    async def send(self, event):
        raise ConnectionError("socket closed")


class GatedChannel:
    """Holds every send until the gate opens."""

    name = "gated"

    def __init__(self):
        self.gate = asyncio.Event()
        self.received = []

    async def send(self, event):
        await self.gate.wait()
        self.received.append(event)


class FlakyEmit:
    def __init__(self, failures: int = 1):
        self.failures = failures
        self.calls = []

    def __call__(self, name, payload):
        self.calls.append(payload["dedupe_key"])
        if len(self.calls) <= self.failures:
            raise ConnectionError("broker unreachable")


@pytest.mark.asyncio
async def test_duplicate_dedupe_key_is_delivered_once(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    channel = QueueChannel()
    await dispatcher.subscribe("cust-1", channel)
    event = make_balance_event("a", 1)

    assert await dispatcher.publish(event) is True
    assert await dispatcher.publish(event) is False

    assert [e.dedupe_key for e in channel.drain()] == ["balance:a:1"]


@pytest.mark.asyncio
async def test_burst_is_coalesced_to_newest_version(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=50)
    channel = QueueChannel()
    await dispatcher.subscribe("cust-1", channel)

    for version in (1, 3, 2):
        await dispatcher.publish(make_balance_event("a", version))
    assert channel.drain() == []

    await asyncio.sleep(0.15)

    delivered = channel.drain()
    assert [e.version for e in delivered] == [3]


@pytest.mark.asyncio
async def test_flush_delivers_pending_events_immediately(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=10_000)
    channel = QueueChannel()
    await dispatcher.subscribe("cust-1", channel)
    await dispatcher.publish(make_balance_event("a", 1))
    await dispatcher.publish(make_balance_event("b", 1))

    await dispatcher.flush()

    assert sorted(e.payload["card_id"] for e in channel.drain()) == ["a", "b"]


@pytest.mark.asyncio
async def test_stale_versions_are_never_delivered_after_newer_ones(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    channel = QueueChannel()
    await dispatcher.subscribe("cust-1", channel)

    await dispatcher.publish(make_balance_event("a", 2))
    await dispatcher.publish(make_balance_event("a", 1))
    await dispatcher.publish(make_balance_event("a", 3))

    assert [e.version for e in channel.drain()] == [2, 3]


@pytest.mark.asyncio
async def test_events_reach_only_their_target_and_wildcard(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    mine, other, everyone = QueueChannel(), QueueChannel(), QueueChannel()
    await dispatcher.subscribe("cust-1", mine)
    await dispatcher.subscribe("cust-2", other)
    await dispatcher.subscribe(ALL_TARGETS, everyone)

    await dispatcher.publish(make_balance_event("a", 1, target="cust-1"))

    assert len(mine.drain()) == 1
    assert other.drain() == []
    assert len(everyone.drain()) == 1


@pytest.mark.asyncio
async def test_failing_channel_is_unsubscribed_without_affecting_others(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    healthy = QueueChannel()
    broken = await dispatcher.subscribe("cust-1", FailingChannel())
    await dispatcher.subscribe("cust-1", healthy)

    await dispatcher.publish(make_balance_event("a", 1))
    await dispatcher.publish(make_balance_event("a", 2))
    await dispatcher.flush()

    assert broken.active is False
    assert len(dispatcher.subscriptions_for("cust-1")) == 1
    assert [e.version for e in healthy.drain()] == [1, 2]


@pytest.mark.asyncio
async def test_broker_channel_forwards_serialized_event(make_balance_event):
    emitted = []
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    await dispatcher.subscribe(ALL_TARGETS, BrokerChannel(emit=lambda name, payload: emitted.append((name, payload))))

    await dispatcher.publish(make_balance_event("a", 1))

    assert len(emitted) == 1
    name, payload = emitted[0]
    assert name == "BALANCE_CHANGED"
    assert payload["dedupe_key"] == "balance:a:1"


@pytest.mark.asyncio
async def test_queue_channel_drops_oldest_when_full(make_balance_event):
    channel = QueueChannel(maxsize=2)
    for version in (1, 2, 3):
        await channel.send(make_balance_event("q", version))

    assert [e.version for e in channel.drain()] == [2, 3]


@pytest.mark.asyncio
async def test_close_deactivates_subscriptions():
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    subscription = await dispatcher.subscribe("cust-1", QueueChannel())

    await dispatcher.close()

    assert subscription.active is False
    assert dispatcher.subscriptions_for("cust-1") == []


@pytest.mark.asyncio
async def test_broker_subscription_survives_a_failed_emit(make_balance_event):
    emit = FlakyEmit(failures=1)
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    broker = await dispatcher.subscribe(ALL_TARGETS, BrokerChannel(emit=emit))

    for card in ("a", "b", "c"):
        await dispatcher.publish(make_balance_event(card, 1))
    await dispatcher.flush()

    assert emit.calls == ["balance:a:1", "balance:b:1", "balance:c:1"]
    assert broker.active is True
    assert broker.failures == 1
    assert broker.delivered == 2
    assert dispatcher.subscriptions_for(ALL_TARGETS) == [broker]


@pytest.mark.asyncio
async def test_publish_does_not_wait_for_slow_consumers(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    slow, fast = GatedChannel(), QueueChannel()
    await dispatcher.subscribe("cust-1", slow)
    await dispatcher.subscribe("cust-1", fast)

    await asyncio.wait_for(dispatcher.publish(make_balance_event("a", 1)), timeout=1.0)
    await asyncio.wait_for(dispatcher.publish(make_balance_event("a", 2)), timeout=1.0)

    assert [e.version for e in fast.drain()] == [1, 2]
    assert slow.received == []

    slow.gate.set()
    await dispatcher.flush()
    assert [e.version for e in slow.received] == [1, 2]


@pytest.mark.asyncio
async def test_full_outbox_drops_oldest_event(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=0, outbox_size=2)
    slow = GatedChannel()
    await dispatcher.subscribe("cust-1", slow)

    for card in ("a", "b", "c", "d"):
        await dispatcher.publish(make_balance_event(card, 1))
    slow.gate.set()
    await dispatcher.flush()

    # The pump may already hold the first event when the outbox fills.
    assert [e.payload["card_id"] for e in slow.received][-2:] == ["c", "d"]
    assert len(slow.received) <= 3


@pytest.mark.asyncio
async def test_closed_subscriptions_leave_no_per_target_state(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    for index in range(50):
        target = f"cust-{index}"
        subscription = await dispatcher.subscribe(target, GatedChannel())
        await dispatcher.publish(make_balance_event(f"card-{index}", 1, target=target))
        await dispatcher.unsubscribe(subscription)
        assert subscription.active is False

    await dispatcher.flush()

    assert dispatcher._subscriptions == {}
    assert dispatcher._pending == {}
    assert dispatcher._timers == {}


@pytest.mark.asyncio
async def test_relayed_events_skip_broker_until_published_locally(make_balance_event):
    emitted = []
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    await dispatcher.subscribe(ALL_TARGETS, BrokerChannel(emit=lambda name, payload: emitted.append(payload["dedupe_key"])))
    live = QueueChannel()
    await dispatcher.subscribe("cust-1", live)

    # Written by another process: live subscribers get it, the broker does not.
    assert await dispatcher.publish(make_balance_event("remote", 1), relayed=True) is True
    await dispatcher.flush()
    assert [e.dedupe_key for e in live.drain()] == ["balance:remote:1"]
    assert emitted == []

    # Written here but relayed first: only the broker still needs it.
    local = make_balance_event("local", 1)
    assert await dispatcher.publish(local, relayed=True) is True
    assert await dispatcher.publish(local) is True
    assert await dispatcher.publish(local) is False
    await dispatcher.flush()
    assert [e.dedupe_key for e in live.drain()] == ["balance:local:1"]
    assert emitted == ["balance:local:1"]


@pytest.mark.asyncio
async def test_close_gives_up_on_stuck_consumers(make_balance_event):
    dispatcher = NotificationDispatcher(coalesce_window_ms=0, close_timeout=0.05)
    subscription = await dispatcher.subscribe("cust-1", GatedChannel())
    await dispatcher.publish(make_balance_event("a", 1))

    await asyncio.wait_for(dispatcher.close(), timeout=2.0)

    assert subscription.active is False
    assert subscription.pump.done()
