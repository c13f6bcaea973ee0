"""
Tests for the WebSocket event stream relay.
"""

import asyncio
import math

import pytest
import pytest_asyncio
from fastapi import WebSocketDisconnect

from api.services.websocket_manager import EventStreamManager, WebSocketClient, json_safe
from perp_mm.core.events import EventBus, EventType


class MockWebSocket:
    """Mock WebSocket that replays scripted inbound messages."""
    def __init__(self, inbound=()):
        self.messages_sent = []
        self.inbound = list(inbound)
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        self.messages_sent.append(data)

    async def receive_json(self):
        if not self.inbound:
            raise WebSocketDisconnect()
        return self.inbound.pop(0)


@pytest_asyncio.fixture
async def stream_bus():
    bus = EventBus()
    yield bus
    await bus.close()


@pytest.fixture
def manager(stream_bus):
    return EventStreamManager(stream_bus, snapshot=lambda: {"running": True, "pnl": float("inf")})


def add_client(manager, client_id, *channels):
    client = WebSocketClient(client_id, MockWebSocket())
    client.subscriptions.update(channels)
    manager.clients[client_id] = client
    return client


def test_json_safe():
    payload = {"factor": math.inf, "loss": -math.inf, "nested": [1.5, math.nan], 3: "x"}
    assert json_safe(payload) == {"factor": "inf", "loss": "-inf", "nested": [1.5, "nan"], "3": "x"}


@pytest.mark.asyncio
async def test_broadcast_only_to_subscribed_clients(manager):
    orders = add_client(manager, "a", "order")
    other = add_client(manager, "b", "position")

    delivered = await manager.broadcast("order", {"order_id": "ex-1"})

    assert delivered == 1
    assert orders.websocket.messages_sent[0]["channel"] == "order"
    assert orders.websocket.messages_sent[0]["payload"] == {"order_id": "ex-1"}
    assert other.websocket.messages_sent == []


@pytest.mark.asyncio
async def test_sequence_numbers_monotonic(manager):
    client = add_client(manager, "a", "order", "position")

    await manager.broadcast("order", {"n": 1})
    await manager.broadcast("position", {"n": 2})
    await manager.broadcast("order", {"n": 3})

    seqs = [m["seq"] for m in client.websocket.messages_sent]
    assert seqs == [1, 2, 3]
    assert client.last_seq_sent == 3


@pytest.mark.asyncio
async def test_no_sequence_without_recipients(manager):
    """Unwatched channels are cached but consume no sequence numbers."""
    await manager.broadcast("order", {"n": 1})

    assert manager.sequence == 0
    assert manager.last_payload["order"] == {"n": 1}


@pytest.mark.asyncio
async def test_subscribe_replays_last_payload(manager):
    await manager.broadcast("circuit_breaker", {"tripped": True})
    client = add_client(manager, "a")

    await manager.handle_message(client, {"type": "SUBSCRIBE", "channels": ["circuit_breaker", "order"]})

    sent = client.websocket.messages_sent
    assert sent[0]["type"] == "SUBSCRIBED"
    assert sent[0]["channels"] == ["circuit_breaker", "order"]
    assert sent[1]["type"] == "DATA"
    assert sent[1]["payload"] == {"tripped": True}
    assert len(sent) == 2


@pytest.mark.asyncio
async def test_unsubscribe(manager):
    client = add_client(manager, "a", "order", "position")

    await manager.handle_message(client, {"type": "UNSUBSCRIBE", "channels": ["order"]})

    assert client.subscriptions == {"position"}


@pytest.mark.asyncio
async def test_resync_sends_snapshot(manager):
    client = add_client(manager, "a")

    await manager.handle_message(client, {"type": "RESYNC"})

    snapshot = client.websocket.messages_sent[0]
    assert snapshot["type"] == "SNAPSHOT"
    assert snapshot["seq"] == 1
    assert snapshot["payload"] == {"running": True, "pnl": "inf"}


@pytest.mark.asyncio
async def test_failed_send_removes_client(manager):
    healthy = add_client(manager, "a", "order")
    broken = add_client(manager, "b", "order")

    async def failing_send(msg):
        raise ConnectionError("client gone")

    broken.websocket.send_json = failing_send

    delivered = await manager.broadcast("order", {"n": 1})

    assert delivered == 1
    assert "b" not in manager.clients
    assert len(healthy.websocket.messages_sent) == 1


@pytest.mark.asyncio
async def test_connect_session(manager):
    websocket = MockWebSocket([{"type": "SUBSCRIBE", "channels": ["order"]}, {"type": "PING"}])

    await manager.connect(websocket)

    assert websocket.accepted
    assert websocket.messages_sent[0]["type"] == "HANDSHAKE"
    assert websocket.messages_sent[0]["seq"] == 0
    assert websocket.messages_sent[1]["type"] == "SUBSCRIBED"
    assert manager.clients == {}


@pytest.mark.asyncio
async def test_relays_bus_events(manager, stream_bus):
    client = add_client(manager, "a", "transaction_pending")
    manager.start()

    stream_bus.emit(EventType.TRANSACTION_PENDING, {"transaction_id": "tx-1", "value": math.inf}, source="security")
    stream_bus.emit(EventType.ORDER, {"order_id": "ex-1"}, source="gateway")
    await stream_bus.join()
    manager.stop()

    sent = client.websocket.messages_sent
    assert len(sent) == 1
    assert sent[0]["channel"] == "transaction_pending"
    assert sent[0]["payload"]["data"] == {"transaction_id": "tx-1", "value": "inf"}
    assert "order" in manager.last_payload

    stream_bus.emit(EventType.TRANSACTION_PENDING, {"transaction_id": "tx-2"})
    await asyncio.sleep(0)
    assert len(sent) == 1
