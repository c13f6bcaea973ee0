"""
Typed event bus for inter-component communication.

The gateway publishes market and account events; every other component
subscribes at construction. Each subscription owns its own queue and drain
task, so a slow consumer never stalls delivery to the others and publishing
never blocks the publisher.
"""

import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from perp_mm.core.models import now_ms

logger = structlog.get_logger(__name__)


class EventType(Enum):
    """Kinds of events carried by the bus."""
    # Exchange events
    ORDERBOOK = "orderbook"
    MARKET = "market"
    TRADE = "trade"
    ORDER = "order"
    POSITION = "position"
    CONNECTION_ERROR = "connection_error"
    CONNECTED = "connected"

    # Risk signals (advisory)
    LIMIT_EXCEEDED = "limit_exceeded"
    PORTFOLIO_LIMIT_EXCEEDED = "portfolio_limit_exceeded"
    CIRCUIT_BREAKER = "circuit_breaker"
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    TAKE_PROFIT_TRIGGERED = "take_profit_triggered"

    # Security
    TRANSACTION_PENDING = "transaction_pending"
    TRANSACTION_EXECUTED = "transaction_executed"
    TRANSACTION_EXPIRED = "transaction_expired"
    TRANSACTION_CANCELED = "transaction_canceled"
    TRANSACTION_FAILED = "transaction_failed"
    ANOMALY_DETECTED = "anomaly_detected"

    # Quoting / optimization
    IMBALANCE_DETECTED = "imbalance_detected"
    REGIME_CHANGED = "regime_changed"
    OPTIMIZATION_COMPLETE = "optimization_complete"
    CONFIG_UPDATE = "config_update"


_event_ids = itertools.count(1)


@dataclass
class Event:
    """A single event. Payload is a model object or a plain dict."""
    type: EventType
    data: Any
    source: str = "unknown"
    timestamp: int = field(default_factory=now_ms)
    event_id: int = field(default_factory=lambda: next(_event_ids))

    @property
    def symbol(self) -> Optional[str]:
        if isinstance(self.data, dict):
            return self.data.get("symbol")
        return getattr(self.data, "symbol", None)

    def to_dict(self) -> dict:
        data = self.data.to_dict() if hasattr(self.data, "to_dict") else self.data
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "source": self.source,
            "timestamp": self.timestamp,
            "data": data,
        }


Handler = Callable[[Event], Union[None, Awaitable[None]]]


class Subscription:
    """One consumer's registration: its handler, queue and drain task."""

    def __init__(
        self,
        event_type: Optional[EventType],
        handler: Handler,
        name: str,
        maxsize: int = 0,
    ):
        self.event_type = event_type
        self.handler = handler
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.task: Optional[asyncio.Task] = None
        self.delivered = 0
        self.failed = 0
        self.dropped = 0
        self.pending = 0

    def matches(self, event: Event) -> bool:
        return self.event_type is None or self.event_type is event.type

    def ensure_running(self) -> None:
        """Start the drain task if an event loop is running."""
        if self.task is not None and not self.task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self.task = loop.create_task(self._drain(), name=f"bus:{self.name}")

    async def _drain(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                result = self.handler(event)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                logger.error(
                    "event_handler_failed",
                    subscriber=self.name,
                    event_type=event.type.value,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self.pending -= 1
                self.queue.task_done()

    def stats(self) -> dict:
        return {
            "name": self.name,
            "event_type": self.event_type.value if self.event_type else "*",
            "queued": self.queue.qsize(),
            "delivered": self.delivered,
            "failed": self.failed,
            "dropped": self.dropped,
        }


class EventBus:
    """
    Async publish/subscribe bus with one channel per event kind.

    Design principles:
    - publish() never blocks and never raises because of a consumer
    - Each subscriber drains its own queue in its own task
    - Handler failures are logged and counted, delivery continues
    - A bounded history is kept for the control surface
    """

    def __init__(self, history_limit: int = 500, queue_size: int = 0):
        """
        Initialize event bus.

        Args:
            history_limit: Number of recent events kept for inspection
            queue_size: Per-subscriber queue bound (0 = unbounded)
        """
        self._subscriptions: list[Subscription] = []
        self._history: list[Event] = []
        self._history_limit = history_limit
        self._queue_size = queue_size
        self._published = 0

        logger.info("event_bus_initialized", history_limit=history_limit)

    def subscribe(
        self,
        event_type: Optional[EventType],
        handler: Handler,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Register a handler for one event kind (None = every kind).

        Handlers may be plain functions or coroutines.
        """
        subscription = Subscription(
            event_type,
            handler,
            name or getattr(handler, "__qualname__", repr(handler)),
            maxsize=self._queue_size,
        )
        self._subscriptions.append(subscription)
        subscription.ensure_running()
        return subscription

    def subscribe_all(self, handler: Handler, name: Optional[str] = None) -> Subscription:
        return self.subscribe(None, handler, name=name)

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if subscription.task is not None:
            subscription.task.cancel()
        # Undelivered events are discarded so join() does not wait on them.
        while not subscription.queue.empty():
            subscription.queue.get_nowait()
            subscription.pending -= 1
            subscription.queue.task_done()

    def publish(self, event: Event) -> int:
        """
        Enqueue an event for every matching subscriber.

        Returns:
            Number of subscribers the event was queued for
        """
        self._published += 1
        self._history.append(event)
        if len(self._history) > self._history_limit:
            self._history = self._history[-self._history_limit:]

        queued = 0
        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            try:
                subscription.queue.put_nowait(event)
                subscription.pending += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(
                    "event_dropped_queue_full",
                    subscriber=subscription.name,
                    event_type=event.type.value,
                )
                continue
            subscription.ensure_running()
            queued += 1
        return queued

    def emit(self, event_type: EventType, data: Any, source: str = "unknown") -> Event:
        """Build and publish an event."""
        event = Event(type=event_type, data=data, source=source)
        self.publish(event)
        return event

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        for subscription in list(self._subscriptions):
            subscription.ensure_running()
        # Handlers may publish further events, so loop until quiet.
        while any(s.pending for s in self._subscriptions):
            await asyncio.gather(*(s.queue.join() for s in list(self._subscriptions)))

    async def close(self) -> None:
        """Drain pending events then cancel every drain task."""
        await self.join()
        tasks = [s.task for s in self._subscriptions if s.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for subscription in self._subscriptions:
            subscription.task = None
        logger.info("event_bus_closed", published=self._published)

    def get_history(
        self,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[Event]:
        events = self._history
        if event_type is not None:
            events = [e for e in events if e.type is event_type]
        return events[-limit:]

    def get_stats(self) -> dict:
        return {
            "published": self._published,
            "subscribers": [s.stats() for s in self._subscriptions],
        }
