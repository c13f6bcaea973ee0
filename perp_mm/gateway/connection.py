"""
Streaming connection supervision.

Each leg is a StreamConnection with an explicit state:

CONNECTING → ACTIVE ⇄ STANDBY
     ↑          ↓        ↓
     └──── RECONNECTING ←┘

The ConnectionSupervisor is the single authority on which leg is active:
- The first leg to open becomes active, later ones stand by
- If the active leg closes, an open standby is promoted and the dropped leg
  is rebuilt after a short delay
- If no leg is open, legs reconnect with exponential backoff
- Every registered subscription is re-sent exactly once on each new leg
- A keep-alive is sent on the active leg, and an active leg that has been
  silent for too long is torn down
"""

import asyncio
import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import aiohttp
import structlog

from perp_mm.config.schema import ApiConfig
from perp_mm.gateway.rate_limiter import backoff_delay

logger = structlog.get_logger(__name__)


class ConnectionState(Enum):
    """Lifecycle state of one streaming leg."""
    CONNECTING = "connecting"
    ACTIVE = "active"
    STANDBY = "standby"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class StreamTransport(Protocol):
    """An open duplex message stream."""

    async def send_json(self, message: dict) -> None:
        ...

    async def receive(self) -> Optional[dict]:
        """Next decoded message, or None once the stream has closed."""
        ...

    async def close(self) -> None:
        ...


StreamOpener = Callable[[str], Awaitable[StreamTransport]]


class AiohttpStream:
    """StreamTransport over an aiohttp websocket."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws

    @classmethod
    async def open(cls, url: str) -> "AiohttpStream":
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(url, autoping=True)
        except BaseException:
            await session.close()
            raise
        return cls(session, ws)

    async def send_json(self, message: dict) -> None:
        await self._ws.send_json(message)

    async def receive(self) -> Optional[dict]:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return json.loads(msg.data)
                except ValueError:
                    logger.warning("stream_message_not_json", size=len(msg.data))
                    continue
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                return None

    async def close(self) -> None:
        await self._ws.close()
        await self._session.close()


class StreamConnection:
    """One streaming leg and its bookkeeping."""

    def __init__(self, index: int):
        self.index = index
        self.state = ConnectionState.CONNECTING
        self.transport: Optional[StreamTransport] = None
        self.last_message_at: float = 0.0
        self.reader: Optional[asyncio.Task] = None
        self.connects = 0
        self.attempt = 0

    @property
    def is_open(self) -> bool:
        return self.transport is not None and self.state in (
            ConnectionState.ACTIVE,
            ConnectionState.STANDBY,
        )

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "state": self.state.value,
            "connects": self.connects,
            "last_message_at": self.last_message_at,
        }


def subscription_key(channel: str, symbol: str) -> str:
    return f"{channel}:{symbol}"


def parse_subscription_key(key: str) -> tuple[str, str]:
    channel, _, symbol = key.partition(":")
    return channel, symbol


class ConnectionSupervisor:
    """
    Owns the streaming legs and decides which one is active.

    Messages are only dispatched from the active leg; standby legs keep
    their own liveness clock so they can be promoted instantly.
    """

    def __init__(
        self,
        config: ApiConfig,
        on_message: Callable[[dict], Any],
        open_stream: Optional[StreamOpener] = None,
        on_state_change: Optional[Callable[[Optional[int]], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize connection supervisor.

        Args:
            config: API configuration (URL, backoff and liveness timings)
            on_message: Called with each decoded message from the active leg
            open_stream: Factory opening a StreamTransport for a URL
            on_state_change: Called with the new active index (None if none)
            clock: Monotonic clock in seconds
            sleep: Awaitable sleep, injectable for tests
        """
        self.config = config
        self.url = config.ws_url
        self._on_message = on_message
        self._open_stream = open_stream or AiohttpStream.open
        self._on_state_change = on_state_change
        self._clock = clock
        self._sleep = sleep

        self.connections = [StreamConnection(i) for i in range(config.stream_connections)]
        self.active_index: Optional[int] = None
        self.subscriptions: dict[str, None] = {}  # ordered set of channel:symbol

        self._tasks: set[asyncio.Task] = set()
        self._reconnecting: dict[int, asyncio.Task] = {}
        self._keepalive_task: Optional[asyncio.Task] = None
        self._active_event = asyncio.Event()
        self._running = False

        logger.info(
            "connection_supervisor_initialized",
            url=self.url,
            legs=len(self.connections),
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def active(self) -> Optional[StreamConnection]:
        if self.active_index is None:
            return None
        return self.connections[self.active_index]

    async def start(self) -> None:
        """Open every leg concurrently and start the keep-alive loop."""
        self._running = True
        for conn in self.connections:
            conn.state = ConnectionState.CONNECTING
            self._schedule_connect(conn.index, delay=0.0)
        self._keepalive_task = asyncio.get_running_loop().create_task(
            self._keepalive_loop(), name="stream-keepalive"
        )

    async def wait_until_active(self, timeout: Optional[float] = None) -> bool:
        """Wait until some leg is active. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._active_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        """Cancel timers and close every leg."""
        self._running = False
        tasks = list(self._tasks)
        if self._keepalive_task is not None:
            tasks.append(self._keepalive_task)
        for conn in self.connections:
            if conn.reader is not None:
                tasks.append(conn.reader)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for conn in self.connections:
            if conn.transport is not None:
                try:
                    await conn.transport.close()
                except Exception as e:
                    logger.warning("stream_close_failed", index=conn.index, error=str(e))
            conn.transport = None
            conn.reader = None
            conn.state = ConnectionState.CLOSED

        self._tasks.clear()
        self._reconnecting.clear()
        self._keepalive_task = None
        self._set_active(None)
        logger.info("connection_supervisor_stopped")

    # =========================================================================
    # CONNECT / RECONNECT
    # =========================================================================

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_connect(self, index: int, delay: float) -> None:
        pending = self._reconnecting.get(index)
        if pending is not None and not pending.done():
            return
        task = self._spawn(self._connect(index, delay), name=f"stream-connect-{index}")
        self._reconnecting[index] = task

    async def _connect(self, index: int, delay: float) -> None:
        conn = self.connections[index]
        if delay > 0:
            await self._sleep(delay)

        while self._running:
            conn.attempt += 1
            try:
                transport = await self._open_stream(self.url)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                retry_in = backoff_delay(
                    self.config.retry_delay_ms, conn.attempt, self.config.max_backoff_s
                )
                logger.warning(
                    "stream_connect_failed",
                    index=index,
                    attempt=conn.attempt,
                    retry_in_s=retry_in,
                    error=str(e),
                )
                conn.state = ConnectionState.RECONNECTING
                await self._sleep(retry_in)
                continue

            await self._on_open(conn, transport)
            return

    async def _on_open(self, conn: StreamConnection, transport: StreamTransport) -> None:
        conn.transport = transport
        conn.last_message_at = self._clock()
        conn.connects += 1
        conn.attempt = 0

        if self.active_index is None:
            conn.state = ConnectionState.ACTIVE
            self._set_active(conn.index)
        else:
            conn.state = ConnectionState.STANDBY

        logger.info(
            "stream_connected",
            index=conn.index,
            state=conn.state.value,
            connects=conn.connects,
        )

        await self._resubscribe(conn)
        conn.reader = asyncio.get_running_loop().create_task(
            self._read_loop(conn, transport), name=f"stream-reader-{conn.index}"
        )

    async def _resubscribe(self, conn: StreamConnection) -> None:
        for key in list(self.subscriptions):
            channel, symbol = parse_subscription_key(key)
            await self._send_on(conn, {"op": "subscribe", "channel": channel, "symbol": symbol})
        if self.subscriptions:
            logger.info(
                "subscriptions_replayed",
                index=conn.index,
                count=len(self.subscriptions),
            )

    async def _read_loop(self, conn: StreamConnection, transport: StreamTransport) -> None:
        try:
            while True:
                message = await transport.receive()
                if message is None:
                    break
                conn.last_message_at = self._clock()
                if conn.index == self.active_index:
                    try:
                        self._on_message(message)
                    except Exception as e:
                        logger.error(
                            "stream_message_handler_failed",
                            index=conn.index,
                            error=str(e),
                            exc_info=True,
                        )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("stream_read_failed", index=conn.index, error=str(e))

        if conn.transport is transport:
            await self._handle_close(conn)

    async def _handle_close(self, conn: StreamConnection) -> None:
        """A leg closed: fail over if it was active, then rebuild it."""
        transport = conn.transport
        conn.transport = None
        conn.reader = None
        conn.state = ConnectionState.RECONNECTING
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug("stream_close_failed", index=conn.index, error=str(e))

        if not self._running:
            return

        was_active = conn.index == self.active_index
        if was_active:
            promoted = self._promote_standby()
            self._set_active(promoted)
            if promoted is None:
                delay = backoff_delay(self.config.retry_delay_ms, 1, self.config.max_backoff_s)
                logger.warning("all_streams_down", index=conn.index, reconnect_in_s=delay)
                self._schedule_connect(conn.index, delay=delay)
                return
            logger.warning("stream_failover", closed=conn.index, active=promoted)

        self._schedule_connect(conn.index, delay=self.config.failover_reconnect_s)

    def _promote_standby(self) -> Optional[int]:
        for conn in self.connections:
            if conn.state is ConnectionState.STANDBY and conn.transport is not None:
                conn.state = ConnectionState.ACTIVE
                return conn.index
        return None

    def _set_active(self, index: Optional[int]) -> None:
        changed = index != self.active_index
        self.active_index = index
        if index is None:
            self._active_event.clear()
        else:
            self._active_event.set()
        if changed and self._on_state_change is not None:
            self._on_state_change(index)

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def subscribe(self, channel: str, symbol: str) -> None:
        key = subscription_key(channel, symbol)
        if key in self.subscriptions:
            return
        self.subscriptions[key] = None
        for conn in self.connections:
            if conn.is_open:
                await self._send_on(conn, {"op": "subscribe", "channel": channel, "symbol": symbol})

    async def unsubscribe(self, channel: str, symbol: str) -> None:
        key = subscription_key(channel, symbol)
        if self.subscriptions.pop(key, "missing") == "missing":
            return
        for conn in self.connections:
            if conn.is_open:
                await self._send_on(conn, {"op": "unsubscribe", "channel": channel, "symbol": symbol})

    async def _send_on(self, conn: StreamConnection, message: dict) -> bool:
        if conn.transport is None:
            return False
        try:
            await conn.transport.send_json(message)
            return True
        except Exception as e:
            logger.warning(
                "stream_send_failed",
                index=conn.index,
                op=message.get("op"),
                error=str(e),
            )
            return False

    # =========================================================================
    # LIVENESS
    # =========================================================================

    async def send_keepalive(self) -> bool:
        conn = self.active
        if conn is None:
            return False
        return await self._send_on(conn, {"op": "ping"})

    async def check_stale(self, now: Optional[float] = None) -> bool:
        """
        Tear down the active leg if it has been silent past the stale timeout.

        Returns:
            True if a stale leg was torn down
        """
        conn = self.active
        if conn is None or conn.transport is None:
            return False
        now = self._clock() if now is None else now
        silent_for = now - conn.last_message_at
        if silent_for <= self.config.stale_timeout_s:
            return False

        logger.warning("stream_stale", index=conn.index, silent_for_s=round(silent_for, 1))
        reader = conn.reader
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        await self._handle_close(conn)
        return True

    async def _keepalive_loop(self) -> None:
        check_every = min(1.0, self.config.ping_interval_s)
        since_ping = 0.0
        while self._running:
            await self._sleep(check_every)
            since_ping += check_every
            if since_ping >= self.config.ping_interval_s:
                since_ping = 0.0
                await self.send_keepalive()
            await self.check_stale()

    def get_state(self) -> dict:
        return {
            "active_index": self.active_index,
            "connections": [c.to_dict() for c in self.connections],
            "subscriptions": list(self.subscriptions),
        }
