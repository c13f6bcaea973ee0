"""
Perp MM - An autonomous market-making agent for perpetual futures venues.

The agent is built around a few assumptions:
- The exchange connection will drop, often
- Every value-bearing action must be authorized and audited
- Risk signals are advisory, never silent
- Parameters drift and must be re-tuned from observed performance
"""

__version__ = "0.1.0"
__author__ = "Market Maker Team"
