"""
Tests for the rate limiter, retry backoff and REST client.
"""

import asyncio

import pytest

from perp_mm.config.schema import ApiConfig
from perp_mm.core.errors import RequestError
from perp_mm.gateway.rate_limiter import RateLimiter, backoff_delay
from perp_mm.gateway.rest import RestClient


class FakeTransport:
    """Replays scripted (status, body) responses or raises scripted errors."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    async def __call__(self, method, url, params, body):
        self.calls.append((method, url, params, body))
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self):
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await asyncio.sleep(0)


def make_client(responses, max_retries=3):
    config = ApiConfig(rest_url="https://exchange.test/", max_retries=max_retries, retry_delay_ms=1000)
    sleep = RecordingSleep()
    transport = FakeTransport(responses)
    limiter = RateLimiter(100, 1000, sleep=RecordingSleep())
    client = RestClient(config, transport=transport, limiter=limiter, sleep=sleep)
    return client, transport, sleep


class TestBackoff:
    def test_exponential_growth(self):
        assert backoff_delay(1000, 1) == 1.0
        assert backoff_delay(1000, 2) == 2.0
        assert backoff_delay(1000, 3) == 4.0

    def test_capped(self):
        assert backoff_delay(1000, 10) == 30.0
        assert backoff_delay(1000, 10, cap_s=5.0) == 5.0


class TestRateLimiter:
    """Tests for RateLimiter."""

    @pytest.mark.asyncio
    async def test_releases_at_fixed_interval(self):
        """Slots are spaced window / max_requests apart."""
        sleep = RecordingSleep()
        limiter = RateLimiter(4, 1000, sleep=sleep)

        await asyncio.gather(*(limiter.acquire() for _ in range(3)))
        await limiter.close()

        assert limiter.released == 3
        assert sleep.delays[:3] == [0.25, 0.25, 0.25]

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        limiter = RateLimiter(10, 1000, sleep=RecordingSleep())
        order = []

        async def request(n):
            await limiter.acquire()
            order.append(n)

        await asyncio.gather(*(request(n) for n in range(5)))
        await limiter.close()

        assert order == [0, 1, 2, 3, 4]

    def test_rejects_zero_rate(self):
        with pytest.raises(ValueError):
            RateLimiter(0, 1000)


class TestRestClient:
    """Tests for RestClient retry policy."""

    @pytest.mark.asyncio
    async def test_success(self):
        client, transport, _ = make_client([(200, {"ok": True})])

        result = await client.request("GET", "/api/v1/account", params={"a": 1})
        await client.close()

        assert result == {"ok": True}
        assert transport.calls[0] == ("GET", "https://exchange.test/api/v1/account", {"a": 1}, None)
        assert transport.closed

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        """5xx is retried with exponential backoff."""
        client, transport, sleep = make_client([
            (502, {"message": "bad gateway"}),
            (503, None),
            (200, {"ok": True}),
        ])

        assert await client.request("GET", "/x") == {"ok": True}
        assert len(transport.calls) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_timeouts(self):
        client, transport, _ = make_client([asyncio.TimeoutError(), (200, [])])

        assert await client.request("GET", "/x") == []
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """4xx fails immediately."""
        client, transport, sleep = make_client([(400, {"message": "bad size"})])

        with pytest.raises(RequestError) as exc:
            await client.request("POST", "/api/v1/order", body={"size": -1})

        assert exc.value.status == 400
        assert "bad size" in str(exc.value)
        assert len(transport.calls) == 1
        assert sleep.delays == []
        assert client.requests_failed == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """After max_retries the last error surfaces."""
        client, transport, sleep = make_client([(500, None)] * 4, max_retries=3)

        with pytest.raises(RequestError) as exc:
            await client.request("GET", "/x")

        assert exc.value.status == 500
        assert exc.value.is_retryable
        assert len(transport.calls) == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
