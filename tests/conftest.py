"""
Pytest configuration and fixtures.

Shared fixtures for all tests.
"""

import asyncio
import itertools
import os
import random
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

from perp_mm.config.loader import default_config, merge_config
from perp_mm.core.events import EventBus
from perp_mm.core.models import MarketSnapshot, Order, OrderBookSnapshot, OrderStatus
from perp_mm.security.signer import LocalSigner

# Set test environment
os.environ["ENVIRONMENT"] = "test"

WALLET = "0x" + "a" * 40
COSIGNER = "0x" + "b" * 40
OUTSIDER = "0x" + "c" * 40
START_MS = 1_700_000_000_000


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: float) -> int:
        self.now += int(ms)
        return self.now


class FakeStream:
    """In-memory StreamTransport: inbound messages are pushed by the test."""

    def __init__(self):
        self.sent = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send_json(self, message):
        self.sent.append(message)

    async def receive(self):
        return await self.inbox.get()

    async def close(self):
        self.closed = True

    def push(self, message):
        self.inbox.put_nowait(message)

    def drop(self):
        """Simulate the remote end closing the stream."""
        self.inbox.put_nowait(None)

    def subscribes(self):
        return [m for m in self.sent if m.get("op") == "subscribe"]


async def fast_sleep(_seconds):
    await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0):
    """Poll until predicate() is truthy or fail after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def clock():
    """Controllable wall clock."""
    return FakeClock()


@pytest.fixture
def rng():
    """Seeded random source."""
    return random.Random(42)


@pytest.fixture
def config():
    """Default configuration with a wallet and one co-signer."""
    return merge_config(
        default_config(WALLET),
        {"security": {"multisig": {"authorized_signers": [COSIGNER]}}},
    )


@pytest.fixture
def signer():
    return LocalSigner(WALLET, secret="test-secret")


@pytest_asyncio.fixture
async def bus():
    """Event bus drained and closed after the test."""
    bus = EventBus()
    yield bus
    await bus.close()


@pytest.fixture
def make_book():
    """Factory for order book snapshots."""
    def _make(symbol="BTC-USDT", bids=((100.0, 1.0),), asks=((102.0, 1.0),), timestamp=START_MS):
        return OrderBookSnapshot(symbol=symbol, bids=list(bids), asks=list(asks), timestamp=timestamp)
    return _make


@pytest.fixture
def make_market():
    """Factory for market snapshots."""
    def _make(symbol="BTC-USDT", price=101.0, volume=500.0, timestamp=START_MS):
        return MarketSnapshot(
            symbol=symbol,
            last_price=price,
            mark_price=price,
            index_price=price,
            volume_24h=volume,
            timestamp=timestamp,
        )
    return _make


@pytest.fixture
def gateway(make_book, make_market):
    """Mock exchange gateway that accepts every order."""
    ids = itertools.count(1)

    async def place_order(request):
        return Order(
            order_id=f"ex-{next(ids)}",
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            price=request.price if request.price is not None else request.stop_price,
            size=request.size,
            status=OrderStatus.NEW,
            client_order_id=request.client_order_id,
            stop_price=request.stop_price,
            correlation_id=request.correlation_id,
        )

    gw = Mock()
    gw.initialize = AsyncMock()
    gw.close = AsyncMock()
    gw.subscribe = AsyncMock()
    gw.unsubscribe = AsyncMock()
    gw.place_order = AsyncMock(side_effect=place_order)
    gw.cancel_order = AsyncMock(return_value={"status": "canceled"})
    gw.get_positions = AsyncMock(return_value=[])
    gw.get_open_orders = AsyncMock(return_value=[])
    gw.get_order_book = AsyncMock(side_effect=lambda symbol, limit=100: make_book(symbol))
    gw.get_market_data = AsyncMock(side_effect=lambda symbol: make_market(symbol))
    gw.get_state = Mock(return_value={"initialized": True, "active_connection": 0})
    gw.active_connection = 0
    return gw
