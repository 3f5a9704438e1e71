"""Tests for research_core/clients/resilient_client.py."""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from research_core.clients.resilient_client import CallSpec, ResilientClient
from research_core.core.errors import (
    CircuitOpenError,
    ExhaustedRetriesError,
    NonRetryableError,
)
from research_core.resilience.circuit_breaker import CircuitBreaker, CircuitState

SLEEP = "research_core.clients.resilient_client.asyncio.sleep"
URL = "https://api.example.com/v1/research"


def make_response(
    status: int, body: str | bytes = '{"ok": true}', headers: dict | None = None
):
    """Response mock usable as `async with session.request(...) as resp`."""
    resp = MagicMock()
    resp.status = status
    resp.headers = headers or {}
    resp.charset = "utf-8"
    resp.read = AsyncMock(return_value=body.encode() if isinstance(body, str) else body)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def make_session(*responses):
    session = MagicMock()
    session.request = MagicMock(side_effect=list(responses))
    return session


def make_client(session, breaker=None, **kwargs) -> ResilientClient:
    client = ResilientClient("perplexity", circuit_breaker=breaker, retry_delay=0.01, **kwargs)
    client._get_session = AsyncMock(return_value=session)
    return client


class TestRetries:
    """Tests for the retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        """2xx returns the parsed JSON body."""
        session = make_session(make_response(200))
        client = make_client(session)

        with patch(SLEEP, new_callable=AsyncMock) as mock_sleep:
            body = await client.get(URL, params={"q": "x"})

        assert body == {"ok": True}
        mock_sleep.assert_not_awaited()
        args, kwargs = session.request.call_args
        assert args == ("GET", URL)
        assert kwargs["params"] == {"q": "x"}

    @pytest.mark.asyncio
    async def test_recovers_after_server_errors(self):
        """500, 500, 200 gives two failures and one success on the breaker."""
        breaker = CircuitBreaker("perplexity", failure_threshold=5)
        session = make_session(make_response(500), make_response(500), make_response(200))
        client = make_client(session, breaker, max_retries=2)

        with (
            patch.object(breaker, "record_failure", wraps=breaker.record_failure) as failures,
            patch.object(breaker, "record_success", wraps=breaker.record_success) as successes,
            patch(SLEEP, new_callable=AsyncMock) as mock_sleep,
        ):
            body = await client.post(URL, json={"query": "q"})

        assert body == {"ok": True}
        assert session.request.call_count == 3
        assert failures.call_count == 2
        assert successes.call_count == 1
        assert mock_sleep.await_count == 2
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """400 raises NonRetryableError after a single attempt."""
        session = make_session(make_response(400, '{"error": "bad query"}'))
        client = make_client(session)

        with patch(SLEEP, new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(NonRetryableError) as exc_info:
                await client.post(URL, json={})

        assert exc_info.value.status == 400
        assert exc_info.value.body == {"error": "bad query"}
        assert session.request.call_count == 1
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_honours_retry_after(self):
        """429 with Retry-After: 2 sleeps exactly two seconds."""
        session = make_session(
            make_response(429, "", headers={"Retry-After": "2"}),
            make_response(200),
        )
        client = make_client(session)

        with patch(SLEEP, new_callable=AsyncMock) as mock_sleep:
            await client.get(URL)

        mock_sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_retry_after_capped(self):
        """Retry-After beyond max_delay is capped."""
        session = make_session(
            make_response(503, "", headers={"Retry-After": "600"}),
            make_response(200),
        )
        client = make_client(session, max_delay=30.0)

        with patch(SLEEP, new_callable=AsyncMock) as mock_sleep:
            await client.get(URL)

        mock_sleep.assert_awaited_once_with(30.0)

    @pytest.mark.asyncio
    async def test_exhausts_after_max_retries(self, metrics):
        """Persistent 503 gives up after max_retries + 1 attempts."""
        breaker = CircuitBreaker("perplexity", failure_threshold=10)
        session = make_session(*[make_response(503) for _ in range(3)])
        client = make_client(session, breaker, max_retries=2, metrics=metrics)

        with patch(SLEEP, new_callable=AsyncMock):
            with pytest.raises(ExhaustedRetriesError) as exc_info:
                await client.get(URL)

        assert exc_info.value.attempts == 3
        assert exc_info.value.status == 503
        assert session.request.call_count == 3
        assert breaker.failure_count == 3
        assert metrics.current.retries == {"perplexity": 2}
        assert metrics.current.exhausted == {"perplexity": 1}

    @pytest.mark.asyncio
    async def test_network_error_retried(self):
        """Connection errors are retried like 5xx."""
        session = MagicMock()
        session.request = MagicMock(
            side_effect=[aiohttp.ClientConnectionError("reset by peer"), make_response(200)]
        )
        client = make_client(session)

        with patch(SLEEP, new_callable=AsyncMock):
            body = await client.get(URL)

        assert body == {"ok": True}
        assert session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_body_parsing(self):
        """Empty bodies are None and non-JSON bodies are text."""
        session = make_session(make_response(204, ""), make_response(200, "plain text"))
        client = make_client(session)

        assert await client.get(URL) is None
        assert await client.get(URL) == "plain text"

    @pytest.mark.asyncio
    async def test_undecodable_server_error_retried(self):
        """A 503 with a non-UTF-8 body is retried like any other 503."""
        broken = make_response(503, b"\xff\xfe\xfa")
        session = make_session(broken, make_response(200))
        client = make_client(session, max_retries=2)

        with patch(SLEEP, new_callable=AsyncMock):
            body = await client.get(URL)

        assert body == {"ok": True}
        assert session.request.call_count == 2
        broken.read.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_undecodable_body_replaced(self):
        """Invalid bytes in a success or client-error body decode with replacement."""
        session = make_session(make_response(200, b"ok \xff"), make_response(400, b"\xfe"))
        client = make_client(session)

        assert await client.get(URL) == "ok �"
        with pytest.raises(NonRetryableError) as exc_info:
            await client.get(URL)
        assert exc_info.value.body == "�"


class TestCircuitIntegration:
    """Tests for circuit breaker interaction."""

    @pytest.mark.asyncio
    async def test_open_circuit_makes_no_call(self):
        """An open breaker fails fast without touching the network."""
        breaker = CircuitBreaker("perplexity")
        breaker.force_state(CircuitState.OPEN)
        session = make_session(make_response(200))
        client = make_client(session, breaker)

        with pytest.raises(CircuitOpenError):
            await client.get(URL)

        session.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_circuit_opening_mid_retry_stops(self):
        """Retries stop once the breaker opens during backoff."""
        breaker = CircuitBreaker("perplexity", failure_threshold=2)
        session = make_session(*[make_response(503) for _ in range(4)])
        client = make_client(session, breaker, max_retries=3)

        with patch(SLEEP, new_callable=AsyncMock):
            with pytest.raises(CircuitOpenError):
                await client.get(URL)

        assert session.request.call_count == 2
        assert breaker.state == CircuitState.OPEN


class TestSession:
    """Tests for session lifecycle."""

    @pytest.mark.asyncio
    async def test_session_reused_and_closed(self):
        """One session per client, closed by the context manager."""
        async with ResilientClient("claude", default_headers={"x-api-key": "k"}) as client:
            first = await client._get_session()
            second = await client._get_session()
            assert first is second

        assert first.closed

    def test_negative_retries_rejected(self):
        """max_retries must be non-negative."""
        with pytest.raises(ValueError):
            ResilientClient("claude", max_retries=-1)

    def test_call_spec_defaults(self):
        """CallSpec only needs a method and URL."""
        call = CallSpec("GET", URL)
        assert call.json is None
        assert call.timeout is None
