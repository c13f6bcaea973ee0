"""
Exchange gateway.

Handles:
- Two supervised streaming connections with failover and replayed subscriptions
- Rate-limited, retrying REST requests
- Parsing exchange messages into model objects and publishing them
"""

from perp_mm.gateway.connection import ConnectionState, ConnectionSupervisor, StreamConnection
from perp_mm.gateway.exchange import Endpoints, ExchangeGateway, generate_client_order_id
from perp_mm.gateway.rate_limiter import RateLimiter, backoff_delay
from perp_mm.gateway.rest import AiohttpTransport, RestClient

__all__ = [
    "ConnectionState",
    "ConnectionSupervisor",
    "StreamConnection",
    "Endpoints",
    "ExchangeGateway",
    "generate_client_order_id",
    "RateLimiter",
    "backoff_delay",
    "AiohttpTransport",
    "RestClient",
]
