# tests/test_notification_stream.py
import json

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from loyalty_core.api.routers.notifications import sse_events
from loyalty_core.main import app
from loyalty_core.services import providers
from loyalty_core.services.notification_channels import QueueChannel


async def _never_disconnected() -> bool:
    return False


@pytest.mark.asyncio
async def test_sse_stream_sends_backlog_then_live_events_without_repeats(make_balance_event):
    channel = QueueChannel()
    backlog = [make_balance_event("s", 1), make_balance_event("s", 2)]
    stream = sse_events(channel, backlog, _never_disconnected, heartbeat=0.05)

    first = await stream.__anext__()
    await stream.__anext__()
    assert first.startswith(f"id: {backlog[0].sequence}\nevent: BALANCE_CHANGED\n")

    await channel.send(backlog[1])
    await channel.send(make_balance_event("s", 3))
    chunk = await stream.__anext__()
    data = json.loads(chunk.split("data: ", 1)[1])
    assert data["payload"]["version"] == 3

    assert await stream.__anext__() == ": keep-alive\n\n"
    await stream.aclose()


def test_websocket_receives_published_events(make_balance_event):
    with TestClient(app) as test_client:
        with test_client.websocket_connect("/api/v1/notifications/cust-ws/ws") as websocket:
            assert websocket.receive_json() == {"event": "subscribed", "target_id": "cust-ws"}
            dispatcher = providers.get_dispatcher()
            test_client.portal.call(dispatcher.publish, make_balance_event("w", 1, target="cust-ws"))
            message = websocket.receive_json()
    assert message["target_id"] == "cust-ws"
    assert message["payload"]["version"] == 1


def test_websocket_rejects_foreign_customer():
    with TestClient(app) as test_client:
        with pytest.raises(WebSocketDisconnect):
            with test_client.websocket_connect(
                "/api/v1/notifications/cust-ws/ws", headers={"X-Customer-Id": "intruder"}
            ):
                pass


@pytest.mark.parametrize(
    "target, headers",
    [
        ("business:biz-ws", {"X-Business-Id": "biz-other"}),
        ("business:biz-ws", {"X-Customer-Id": "cust-ws"}),
        ("*", {"X-Business-Id": "biz-ws"}),
    ],
)
def test_websocket_rejects_foreign_business_streams(target, headers):
    with TestClient(app) as test_client:
        with pytest.raises(WebSocketDisconnect):
            with test_client.websocket_connect(f"/api/v1/notifications/{target}/ws", headers=headers):
                pass


def test_business_websocket_receives_its_events(make_balance_event):
    with TestClient(app) as test_client:
        with test_client.websocket_connect(
            "/api/v1/notifications/business:biz-ws/ws", headers={"X-Business-Id": "biz-ws"}
        ) as websocket:
            assert websocket.receive_json() == {"event": "subscribed", "target_id": "business:biz-ws"}
            dispatcher = providers.get_dispatcher()
            test_client.portal.call(dispatcher.publish, make_balance_event("bw", 1, target="business:biz-ws"))
            message = websocket.receive_json()

    assert message["target_id"] == "business:biz-ws"
    assert message["payload"]["card_id"] == "bw"
