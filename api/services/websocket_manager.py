"""
Event stream relay over WebSocket.

Every bus event is relayed to the clients subscribed to its channel (the
event type value, e.g. ``order`` or ``transaction_pending``). Messages carry
one monotonically increasing sequence number so clients can detect gaps and
ask for a snapshot.
"""

import itertools
from typing import Any, Callable, Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from perp_mm.core.events import Event, EventBus, Subscription
from perp_mm.core.models import now_ms, utc_iso

logger = structlog.get_logger(__name__)

_client_ids = itertools.count(1)


def json_safe(value: Any) -> Any:
    """Replace non-finite floats, which JSON cannot carry, with strings."""
    if isinstance(value, float) and (value != value or value in (float("inf"), float("-inf"))):
        return str(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


class WebSocketClient:
    """A connected client and its channel subscriptions."""

    def __init__(self, client_id: str, websocket: WebSocket):
        self.client_id = client_id
        self.websocket = websocket
        self.subscriptions: set[str] = set()
        self.last_seq_sent = 0

    async def send(self, message: dict) -> None:
        await self.websocket.send_json(message)
        if "seq" in message:
            self.last_seq_sent = message["seq"]


class EventStreamManager:
    """
    Relays bus events to WebSocket clients.

    Design:
    - One global sequence counter
    - Clients receive only the channels they subscribed to
    - A failed send drops the client, never the relay
    """

    def __init__(self, bus: EventBus, snapshot: Optional[Callable[[], dict]] = None):
        self.bus = bus
        self.snapshot = snapshot
        self.clients: dict[str, WebSocketClient] = {}
        self.sequence = 0
        self.last_payload: dict[str, Any] = {}  # channel -> last payload
        self._subscription: Optional[Subscription] = None
        logger.info("event_stream_manager_initialized")

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.bus.subscribe_all(self.relay, name="api.event_stream")

    def stop(self) -> None:
        if self._subscription is not None:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None

    def _next_seq(self) -> int:
        self.sequence += 1
        return self.sequence

    async def connect(self, websocket: WebSocket) -> None:
        """Serve one client until it disconnects."""
        await websocket.accept()
        client = WebSocketClient(f"client-{next(_client_ids)}", websocket)
        self.clients[client.client_id] = client
        logger.info("websocket_client_connected", client_id=client.client_id)

        await client.send({
            "type": "HANDSHAKE",
            "session_id": client.client_id,
            "server_time": utc_iso(now_ms()),
            "seq": self.sequence,
        })
        try:
            while True:
                await self.handle_message(client, await websocket.receive_json())
        except WebSocketDisconnect:
            logger.info("websocket_client_disconnected", client_id=client.client_id)
        finally:
            self.clients.pop(client.client_id, None)

    async def handle_message(self, client: WebSocketClient, data: dict) -> None:
        msg_type = data.get("type")
        if msg_type == "SUBSCRIBE":
            channels = [str(c) for c in data.get("channels", [])]
            client.subscriptions.update(channels)
            await client.send({
                "type": "SUBSCRIBED",
                "channels": sorted(client.subscriptions),
                "seq": self.sequence,
            })
            for channel in channels:
                if channel in self.last_payload:
                    await client.send(self._data_message(channel, self.last_payload[channel]))
        elif msg_type == "UNSUBSCRIBE":
            client.subscriptions.difference_update(data.get("channels", []))
        elif msg_type == "RESYNC":
            payload = self.snapshot() if self.snapshot is not None else {}
            await client.send({
                "type": "SNAPSHOT",
                "seq": self._next_seq(),
                "ts": utc_iso(now_ms()),
                "payload": json_safe(payload),
            })
        else:
            logger.warning("unknown_message_type", type=msg_type, client_id=client.client_id)

    def _data_message(self, channel: str, payload: Any) -> dict:
        return {
            "type": "DATA",
            "seq": self._next_seq(),
            "ts": utc_iso(now_ms()),
            "channel": channel,
            "payload": payload,
        }

    async def relay(self, event: Event) -> None:
        """Bus handler: forward one event to its subscribers."""
        await self.broadcast(event.type.value, json_safe(event.to_dict()))

    async def broadcast(self, channel: str, payload: Any) -> int:
        """
        Send a payload to every client subscribed to the channel.

        Returns:
            Number of clients that received it
        """
        self.last_payload[channel] = payload
        targets = [c for c in self.clients.values() if channel in c.subscriptions]
        if not targets:
            return 0

        message = self._data_message(channel, payload)
        delivered = 0
        for client in targets:
            try:
                await client.send(message)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                self.clients.pop(client.client_id, None)
                logger.warning("client_removed_due_to_send_error", client_id=client.client_id, error=str(e))
        return delivered
