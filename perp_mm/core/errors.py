"""
Error taxonomy.

- Transient connectivity failures are retried inside the gateway and only
  surface as RequestError once retries are exhausted.
- Policy violations (limits, circuit breakers, anomalies) are never raised;
  they are published as advisory events.
- Authorization and configuration failures are raised to the caller.
"""

from typing import Optional


class PerpMMError(Exception):
    """Base class for all agent errors."""


class ConfigError(PerpMMError):
    """Configuration rejected at update time. Prior configuration stays active."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class GatewayError(PerpMMError):
    """Exchange gateway failure."""


class RequestError(GatewayError):
    """REST request failed (4xx, or 5xx/timeout after all retries)."""

    def __init__(self, message: str, status: Optional[int] = None, path: str = ""):
        self.status = status
        self.path = path
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """5xx and timeouts (status None) are transient."""
        return self.status is None or self.status >= 500


class ConnectionUnavailable(GatewayError):
    """No streaming connection is open."""


class AuthorizationError(PerpMMError):
    """Transaction authorization rejected."""

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        self.transaction_id = transaction_id
        super().__init__(message)


class StartupError(PerpMMError):
    """Unrecoverable start-up failure."""
