"""
Performance analytics.
"""

from perp_mm.analytics.ledger import (
    PerformanceLedger,
    SymbolMetrics,
    TradeGroups,
    WinLossStats,
    compute_win_loss,
    spread_capture,
)

__all__ = [
    "PerformanceLedger",
    "SymbolMetrics",
    "TradeGroups",
    "WinLossStats",
    "compute_win_loss",
    "spread_capture",
]
