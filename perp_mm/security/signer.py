"""
Signing capability.

Key custody lives outside the agent. The agent only needs an identity
(address), a readiness flag and a way to sign a payload.
"""

import hashlib
import hmac
from typing import Protocol, runtime_checkable


@runtime_checkable
class Signer(Protocol):
    """Capability to sign on behalf of the agent's wallet."""

    @property
    def address(self) -> str:
        ...

    @property
    def is_ready(self) -> bool:
        ...

    async def sign(self, payload: str) -> str:
        ...


class LocalSigner:
    """
    Process-local signer keyed by a shared secret.

    For dry runs and tests; production deployments inject a signer backed
    by real custody.
    """

    def __init__(self, address: str, secret: str = "", ready: bool = True):
        self._address = address
        self._secret = secret.encode("utf-8")
        self._ready = ready

    @property
    def address(self) -> str:
        return self._address

    @property
    def is_ready(self) -> bool:
        return self._ready

    def set_ready(self, ready: bool) -> None:
        self._ready = ready

    async def sign(self, payload: str) -> str:
        if not self._ready:
            raise RuntimeError("signer is not ready")
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()
