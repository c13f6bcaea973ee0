"""
Rate-limited REST client with retry.

Every call passes through the RateLimiter. 5xx responses and transport
timeouts are retried up to ``max_retries`` times with exponential backoff;
4xx responses fail immediately. Exhausted retries surface as RequestError.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, Protocol

import aiohttp
import structlog

from perp_mm.config.schema import ApiConfig
from perp_mm.core.errors import RequestError
from perp_mm.gateway.rate_limiter import RateLimiter, backoff_delay

logger = structlog.get_logger(__name__)


class HttpTransport(Protocol):
    """Sends one HTTP request. Returns (status, decoded JSON body)."""

    async def __call__(
        self,
        method: str,
        url: str,
        params: Optional[dict],
        body: Optional[dict],
    ) -> tuple[int, Any]:
        ...

    async def close(self) -> None:
        ...


class AiohttpTransport:
    """HttpTransport backed by a shared aiohttp.ClientSession."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None

    async def __call__(
        self,
        method: str,
        url: str,
        params: Optional[dict],
        body: Optional[dict],
    ) -> tuple[int, Any]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        async with self._session.request(method, url, params=params, json=body) as response:
            text = await response.text()
            try:
                payload = json.loads(text) if text else None
            except ValueError:
                payload = {"raw": text}
            return response.status, payload

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class RestClient:
    """
    Rate-limited, retrying request/response client.

    Design principles:
    - One limiter shared by every call
    - Retry only what is transient (5xx, timeout, dropped connection)
    - Never swallow a failure: the caller gets the result or a RequestError
    """

    def __init__(
        self,
        config: ApiConfig,
        transport: Optional[HttpTransport] = None,
        limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = config.rest_url.rstrip("/")
        self.max_retries = config.max_retries
        self.retry_delay_ms = config.retry_delay_ms
        self.max_backoff_s = config.max_backoff_s
        self.transport = transport or AiohttpTransport()
        self.limiter = limiter or RateLimiter(
            config.rate_limit_max_requests,
            config.rate_limit_window_ms,
        )
        self._sleep = sleep
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

        self.requests_sent = 0
        self.requests_failed = 0

        logger.info(
            "rest_client_initialized",
            base_url=self.base_url,
            max_retries=self.max_retries,
        )

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
    ) -> Any:
        """
        Perform a request with rate limiting and retry.

        Args:
            method: HTTP method
            path: Path relative to the REST base URL
            params: Query parameters
            body: JSON body

        Returns:
            Decoded JSON response

        Raises:
            RequestError: 4xx, or 5xx/timeout after all retries
        """
        self._in_flight += 1
        self._idle.clear()
        try:
            return await self._request_with_retry(method, path, params, body)
        finally:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.set()

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: Optional[dict],
        body: Optional[dict],
    ) -> Any:
        retries = 0
        while True:
            await self.limiter.acquire()
            try:
                return await self._send(method, path, params, body)
            except RequestError as e:
                if not e.is_retryable or retries >= self.max_retries:
                    self.requests_failed += 1
                    logger.error(
                        "request_failed",
                        method=method,
                        path=path,
                        status=e.status,
                        retries=retries,
                        error=str(e),
                    )
                    raise
                retries += 1
                delay = backoff_delay(self.retry_delay_ms, retries, self.max_backoff_s)
                logger.warning(
                    "request_retry",
                    method=method,
                    path=path,
                    status=e.status,
                    attempt=retries,
                    delay_s=delay,
                )
                await self._sleep(delay)

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[dict],
        body: Optional[dict],
    ) -> Any:
        url = f"{self.base_url}{path}"
        self.requests_sent += 1
        try:
            status, payload = await self.transport(method, url, params, body)
        except asyncio.TimeoutError:
            raise RequestError(f"{method} {path} timed out", status=None, path=path)
        except aiohttp.ClientError as e:
            raise RequestError(f"{method} {path} failed: {e}", status=None, path=path)

        if status >= 400:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise RequestError(
                f"{method} {path} returned {status}: {message or payload}",
                status=status,
                path=path,
            )
        return payload

    async def close(self) -> None:
        """Let in-flight calls finish or exhaust their retries, then close."""
        await self._idle.wait()
        await self.limiter.close()
        await self.transport.close()
        logger.info(
            "rest_client_closed",
            requests_sent=self.requests_sent,
            requests_failed=self.requests_failed,
        )
