"""
Risk management module.

Handles:
- Position and leverage limits
- Stop-loss / take-profit placement and trailing stops
- Volatility circuit breakers
- Portfolio exposure and drawdown limits
"""

from perp_mm.risk.circuit_breaker import BreakerTrip, CircuitBreaker
from perp_mm.risk.engine import LimitBreach, RiskEngine
from perp_mm.risk.protective import ProtectiveOrders

__all__ = ["BreakerTrip", "CircuitBreaker", "LimitBreach", "RiskEngine", "ProtectiveOrders"]
