"""
Performance ledger.

Aggregates fills and positions into:
- Realized / unrealized / total PnL
- Trade count, win rate and profit factor (orders grouped by correlation id)
- Exposure (current, exponentially smoothed average, max)
- Spread capture efficiency and slippage per fill
"""

from collections import OrderedDict, deque
from dataclasses import dataclass, field, asdict
from typing import Iterable, Optional

import numpy as np
import pandas as pd
import structlog

from perp_mm.core.events import Event, EventBus, EventType, Subscription
from perp_mm.core.models import Order, OrderBookSnapshot, OrderSide, OrderStatus, Position
from perp_mm.core.periodic import PeriodicTask

logger = structlog.get_logger(__name__)

EXPOSURE_SMOOTHING = 0.1
SPREAD_CAPTURE_ALPHA = 0.2
TRADE_HISTORY = 10_000


@dataclass
class WinLossStats:
    """Outcome of pairing filled orders by correlation id."""
    wins: int = 0
    losses: int = 0
    total_profit: float = 0.0
    total_loss: float = 0.0

    @property
    def closed_trades(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        return self.wins / self.closed_trades if self.closed_trades else 0.0

    @property
    def average_profit(self) -> float:
        return self.total_profit / self.wins if self.wins else 0.0

    @property
    def average_loss(self) -> float:
        return self.total_loss / self.losses if self.losses else 0.0

    @property
    def profit_factor(self) -> float:
        if self.total_loss == 0:
            return float("inf") if self.total_profit > 0 else 0.0
        return self.total_profit / self.total_loss

    def to_dict(self) -> dict:
        return {
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "total_profit": self.total_profit,
            "total_loss": self.total_loss,
            "average_profit": self.average_profit,
            "average_loss": self.average_loss,
            "profit_factor": self.profit_factor,
        }


@dataclass
class SymbolMetrics:
    """Per-symbol performance."""
    symbol: str
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    trade_count: int = 0
    win_loss: WinLossStats = field(default_factory=WinLossStats)
    current_exposure: float = 0.0
    average_exposure: float = 0.0
    max_exposure: float = 0.0
    spread_capture_efficiency: float = 0.0
    slippage: float = 0.0
    spread_samples: int = 0

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    def to_dict(self) -> dict:
        data = asdict(self)
        data["win_loss"] = self.win_loss.to_dict()
        data["total_pnl"] = self.total_pnl
        return data


def compute_win_loss(orders: Iterable[Order]) -> WinLossStats:
    """
    Pair filled orders by correlation id and score each closed group.

    A group needs at least two filled orders. Its PnL is the sum of sell
    proceeds minus the sum of buy cost, each valued at average fill price.
    """
    rows = [
        {
            "correlation_id": o.correlation_id,
            "side": o.side.value,
            "notional": o.avg_fill_price * o.filled_size,
        }
        for o in orders
        if o.status is OrderStatus.FILLED and o.correlation_id
    ]
    stats = WinLossStats()
    if not rows:
        return stats

    df = pd.DataFrame(rows)
    df["signed"] = np.where(df["side"] == OrderSide.SELL.value, df["notional"], -df["notional"])
    grouped = df.groupby("correlation_id")["signed"].agg(["sum", "count"])
    closed = grouped[grouped["count"] >= 2]["sum"]

    for pnl in closed:
        if pnl > 0:
            stats.wins += 1
            stats.total_profit += float(pnl)
        elif pnl < 0:
            stats.losses += 1
            stats.total_loss += float(-pnl)
    return stats


def spread_capture(order: Order, book: OrderBookSnapshot) -> Optional[tuple[float, float]]:
    """
    Efficiency (% of half-spread captured) and slippage of one fill.

    Returns None when the book has no two-sided quote.
    """
    mid = book.mid_price
    spread = book.spread
    if mid is None or spread is None or spread <= 0:
        return None

    fill = order.avg_fill_price
    if order.side is OrderSide.BUY:
        captured = mid - fill
        slippage = fill - book.best_bid
    else:
        captured = fill - mid
        slippage = book.best_ask - fill
    efficiency = captured / (spread / 2) * 100
    return efficiency, slippage


class TradeGroups:
    """
    Running win/loss over correlation-id groups.

    Each fill adjusts only its own group's score, so recording a fill costs
    the same however long the history is. Only the most recent groups are
    kept; an evicted group keeps its last score in the totals.
    """

    def __init__(self, limit: int = TRADE_HISTORY):
        self.limit = limit
        self.stats = WinLossStats()
        self._groups: OrderedDict[str, list] = OrderedDict()  # correlation_id -> [pnl, fills]

    def __len__(self) -> int:
        return len(self._groups)

    def add(self, order: Order) -> None:
        if order.status is not OrderStatus.FILLED or not order.correlation_id:
            return
        notional = order.avg_fill_price * order.filled_size
        signed = notional if order.side is OrderSide.SELL else -notional

        group = self._groups.pop(order.correlation_id, None) or [0.0, 0]
        if group[1] >= 2:
            self._score(group[0], -1)
        group[0] += signed
        group[1] += 1
        if group[1] >= 2:
            self._score(group[0], 1)

        self._groups[order.correlation_id] = group
        while len(self._groups) > self.limit:
            self._groups.popitem(last=False)

    def _score(self, pnl: float, sign: int) -> None:
        stats = self.stats
        if pnl > 0:
            stats.wins += sign
            stats.total_profit = _settle(stats.total_profit + sign * pnl)
        elif pnl < 0:
            stats.losses += sign
            stats.total_loss = _settle(stats.total_loss - sign * pnl)


def _settle(total: float) -> float:
    # Withdrawing a group's score must return an emptied total to exactly zero.
    return 0.0 if abs(total) < 1e-9 else total


class PerformanceLedger:
    """
    Tracks trading performance from gateway events.

    Design principles:
    - Derived from events only, never from other components' state
    - Aggregate view is recomputed on every update, from running per-symbol totals
    - Reports are plain dicts, safe to hand to the control surface
    """

    def __init__(
        self,
        bus: EventBus,
        refresh_interval_s: float = 10.0,
        history_limit: int = TRADE_HISTORY,
    ):
        """
        Initialize performance ledger.

        Args:
            bus: Event bus to consume order, position and order book events from
            refresh_interval_s: Period of the aggregate refresh tick
            history_limit: Correlation groups and fill ids remembered per symbol
        """
        self.bus = bus
        self.metrics: dict[str, SymbolMetrics] = {}
        self.overall: dict = self._empty_overall()
        self.history_limit = history_limit
        self._trades: dict[str, TradeGroups] = {}
        self._seen: dict[str, tuple[deque, set]] = {}  # symbol -> recent fill ids
        self._order_books: dict[str, OrderBookSnapshot] = {}
        self._positions: dict[str, Position] = {}

        self._subscriptions: list[Subscription] = []
        self._refresh = PeriodicTask("ledger-refresh", refresh_interval_s, self.update_overall)
        self.running = False

        logger.info("performance_ledger_initialized", refresh_interval_s=refresh_interval_s)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        self._subscriptions = [
            self.bus.subscribe(EventType.ORDER, self._on_order, name="ledger.order"),
            self.bus.subscribe(EventType.POSITION, self._on_position, name="ledger.position"),
            self.bus.subscribe(EventType.ORDERBOOK, self._on_orderbook, name="ledger.orderbook"),
        ]
        self._refresh.start()
        self.running = True
        logger.info("performance_ledger_started")

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions = []
        await self._refresh.stop()
        self.running = False
        logger.info("performance_ledger_stopped")

    def _on_order(self, event: Event) -> None:
        self.handle_order(event.data)

    def _on_position(self, event: Event) -> None:
        self.handle_position(event.data)

    def _on_orderbook(self, event: Event) -> None:
        self.handle_orderbook(event.data)

    # =========================================================================
    # UPDATES
    # =========================================================================

    def _symbol(self, symbol: str) -> SymbolMetrics:
        if symbol not in self.metrics:
            self.metrics[symbol] = SymbolMetrics(symbol=symbol)
        return self.metrics[symbol]

    def handle_orderbook(self, book: OrderBookSnapshot) -> None:
        self._order_books[book.symbol] = book

    def handle_order(self, order: Order) -> None:
        """Record a filled order: count, PnL, win/loss, spread capture."""
        if order.status is not OrderStatus.FILLED:
            return
        if not self._first_fill(order):
            return

        metrics = self._symbol(order.symbol)
        metrics.trade_count += 1

        position = self._positions.get(order.symbol)
        if position is not None:
            metrics.realized_pnl = position.realized_pnl
            metrics.unrealized_pnl = position.unrealized_pnl

        trades = self._trades.setdefault(order.symbol, TradeGroups(self.history_limit))
        trades.add(order)
        metrics.win_loss = trades.stats

        book = self._order_books.get(order.symbol)
        if book is not None:
            capture = spread_capture(order, book)
            if capture is not None:
                efficiency, slippage = capture
                alpha = SPREAD_CAPTURE_ALPHA
                metrics.spread_capture_efficiency = (
                    (1 - alpha) * metrics.spread_capture_efficiency + alpha * efficiency
                )
                metrics.slippage = (1 - alpha) * metrics.slippage + alpha * slippage
                metrics.spread_samples += 1

        logger.debug(
            "fill_recorded",
            symbol=order.symbol,
            side=order.side.value,
            price=order.avg_fill_price,
            size=order.filled_size,
            trade_count=metrics.trade_count,
        )
        self.update_overall()

    def _first_fill(self, order: Order) -> bool:
        order_ids, seen = self._seen.setdefault(order.symbol, (deque(), set()))
        if order.order_id in seen:
            return False
        order_ids.append(order.order_id)
        seen.add(order.order_id)
        if len(order_ids) > self.history_limit:
            seen.discard(order_ids.popleft())
        return True

    def handle_position(self, position: Position) -> None:
        """Update PnL and exposure from a position snapshot."""
        self._positions[position.symbol] = position
        metrics = self._symbol(position.symbol)
        metrics.realized_pnl = position.realized_pnl
        metrics.unrealized_pnl = position.unrealized_pnl

        exposure = position.notional
        metrics.current_exposure = exposure
        metrics.max_exposure = max(metrics.max_exposure, exposure)
        metrics.average_exposure = (
            EXPOSURE_SMOOTHING * exposure + (1 - EXPOSURE_SMOOTHING) * metrics.average_exposure
        )
        self.update_overall()

    # =========================================================================
    # AGGREGATION
    # =========================================================================

    @staticmethod
    def _empty_overall() -> dict:
        return {
            "realized_pnl": 0.0,
            "unrealized_pnl": 0.0,
            "total_pnl": 0.0,
            "trade_count": 0,
            "win_loss": WinLossStats().to_dict(),
            "current_exposure": 0.0,
            "average_exposure": 0.0,
            "max_exposure": 0.0,
            "spread_capture_efficiency": 0.0,
            "slippage": 0.0,
        }

    def update_overall(self) -> dict:
        """Recompute the cross-symbol aggregate."""
        if not self.metrics:
            self.overall = self._empty_overall()
            return self.overall

        combined = WinLossStats()
        for m in self.metrics.values():
            combined.wins += m.win_loss.wins
            combined.losses += m.win_loss.losses
            combined.total_profit += m.win_loss.total_profit
            combined.total_loss += m.win_loss.total_loss

        samples = sum(m.spread_samples for m in self.metrics.values())
        if samples:
            efficiency = sum(m.spread_capture_efficiency * m.spread_samples for m in self.metrics.values()) / samples
            slippage = sum(m.slippage * m.spread_samples for m in self.metrics.values()) / samples
        else:
            efficiency = slippage = 0.0

        realized = sum(m.realized_pnl for m in self.metrics.values())
        unrealized = sum(m.unrealized_pnl for m in self.metrics.values())
        self.overall = {
            "realized_pnl": realized,
            "unrealized_pnl": unrealized,
            "total_pnl": realized + unrealized,
            "trade_count": sum(m.trade_count for m in self.metrics.values()),
            "win_loss": combined.to_dict(),
            "current_exposure": sum(m.current_exposure for m in self.metrics.values()),
            "average_exposure": sum(m.average_exposure for m in self.metrics.values()),
            "max_exposure": sum(m.max_exposure for m in self.metrics.values()),
            "spread_capture_efficiency": efficiency,
            "slippage": slippage,
        }
        return self.overall

    # =========================================================================
    # READ-ONLY VIEWS
    # =========================================================================

    def get_symbol_metrics(self, symbol: str) -> Optional[dict]:
        metrics = self.metrics.get(symbol)
        return metrics.to_dict() if metrics else None

    def get_overall_metrics(self) -> dict:
        return dict(self.overall)

    @property
    def total_pnl(self) -> float:
        return self.overall["total_pnl"]

    def get_performance_report(self) -> dict:
        """Trade, PnL, risk and execution-quality summary."""
        overall = self.overall
        win_loss = overall["win_loss"]
        return {
            "trade_summary": {
                "total_trades": overall["trade_count"],
                "closed_trades": win_loss["wins"] + win_loss["losses"],
                "win_rate": win_loss["win_rate"],
                "profit_factor": win_loss["profit_factor"],
                "average_profit": win_loss["average_profit"],
                "average_loss": win_loss["average_loss"],
            },
            "pnl_summary": {
                "realized": overall["realized_pnl"],
                "unrealized": overall["unrealized_pnl"],
                "total": overall["total_pnl"],
                "by_symbol": {s: m.total_pnl for s, m in self.metrics.items()},
            },
            "risk_summary": {
                "current_exposure": overall["current_exposure"],
                "average_exposure": overall["average_exposure"],
                "max_exposure": overall["max_exposure"],
            },
            "execution_quality": {
                "spread_capture_efficiency": overall["spread_capture_efficiency"],
                "average_slippage": overall["slippage"],
            },
        }

    def get_state(self) -> dict:
        return {
            "running": self.running,
            "symbols": {s: m.to_dict() for s, m in self.metrics.items()},
            "overall": self.get_overall_metrics(),
        }
