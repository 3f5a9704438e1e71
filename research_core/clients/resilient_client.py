"""Retrying HTTP client guarded by a circuit breaker.

Every call runs inside the bound breaker's `execute`, so a call either
fails fast with CircuitOpenError or is attempted up to `max_retries + 1`
times with exponential backoff.

Usage:
    from research_core.clients import CallSpec, ResilientClient

    async with ResilientClient("perplexity", circuit_breaker=breaker) as client:
        body = await client.request(
            CallSpec("POST", "https://api.perplexity.ai/chat/completions", json=payload)
        )

Retry policy:
    - 2xx: return parsed body
    - 408/429/5xx, timeouts, network errors: retry, honouring Retry-After
    - other statuses: NonRetryableError immediately
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import aiohttp

from research_core.config.constants import (
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_DELAY,
    MAX_RETRIES,
    RETRYABLE_STATUS_CODES,
)
from research_core.core.errors import (
    CircuitOpenError,
    ExhaustedRetriesError,
    NonRetryableError,
    ResearchCoreError,
    RetryableTransportError,
    classify_exception,
)
from research_core.observability.logger import get_logger, log_context
from research_core.observability.metrics import MetricsCollector
from research_core.resilience.backoff import ExponentialBackoff, parse_retry_after
from research_core.resilience.circuit_breaker import CircuitBreaker

logger = get_logger(__name__)


@dataclass
class CallSpec:
    """One outbound HTTP call."""

    method: str
    url: str
    headers: dict[str, str] | None = None
    params: dict[str, Any] | None = None
    json: Any = None
    timeout: float | None = None  # Overrides the client timeout


class ResilientClient:
    """aiohttp client with retries, backoff and a circuit breaker."""

    def __init__(
        self,
        service: str,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_delay: float = DEFAULT_MAX_RETRY_DELAY,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        retryable_status_codes: frozenset[int] = RETRYABLE_STATUS_CODES,
        metrics: MetricsCollector | None = None,
        default_headers: dict[str, str] | None = None,
    ):
        """
        Initialize the client.

        Args:
            service: Service name used for logging, metrics and errors
            circuit_breaker: Breaker consulted for every call
            max_retries: Retries after the first attempt
            retry_delay: Base backoff delay (seconds)
            max_delay: Backoff ceiling (seconds), also caps Retry-After
            timeout: Default per-attempt timeout (seconds)
            retryable_status_codes: Statuses that trigger a retry
            metrics: Collector for retry counts
            default_headers: Headers sent with every request
        """
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")

        self.service = service
        self.circuit_breaker = circuit_breaker
        self.max_retries = max_retries
        self.max_delay = max_delay
        self.timeout = timeout
        self.retryable_status_codes = frozenset(retryable_status_codes)
        self.metrics = metrics
        self.default_headers = dict(default_headers or {})
        self.backoff = ExponentialBackoff(base=retry_delay, max_delay=max_delay)

        # Session
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=self.default_headers)
        return self._session

    async def close(self) -> None:
        """Close the session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def request(self, call: CallSpec) -> Any:
        """Perform a call with retries.

        Returns:
            Parsed JSON body, raw text when the body is not JSON, or None
            when the body is empty

        Raises:
            CircuitOpenError: Breaker is open, no attempt was made
            NonRetryableError: Non-retryable status
            ExhaustedRetriesError: Retry budget spent
        """
        with log_context(service=self.service):
            if self.circuit_breaker is None:
                return await self._attempt_loop(call)
            return await self.circuit_breaker.execute(self._attempt_loop, call)

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request(CallSpec("GET", url, **kwargs))

    async def post(self, url: str, **kwargs: Any) -> Any:
        return await self.request(CallSpec("POST", url, **kwargs))

    def retry_delay(self, error: RetryableTransportError, attempt: int) -> float:
        """Delay before the next attempt, preferring the server's Retry-After."""
        if error.retry_after is not None:
            return min(error.retry_after, self.max_delay)
        return self.backoff.next_delay(attempt)

    async def _attempt_loop(self, call: CallSpec) -> Any:
        attempt = 0
        while True:
            if attempt > 0 and self.circuit_breaker is not None and self.circuit_breaker.is_open():
                logger.warning(
                    "Circuit opened while backing off, giving up",
                    extra={"attempt": attempt, "url": call.url},
                )
                raise CircuitOpenError(
                    f"Circuit for {self.service} opened during retries",
                    service=self.service,
                    reset_at=self.circuit_breaker.reset_at,
                )

            try:
                return await self._send(call)
            except RetryableTransportError as e:
                if attempt >= self.max_retries:
                    raise self._exhausted(call, e) from e

                delay = self.retry_delay(e, attempt)
                logger.warning(
                    f"Retry {attempt + 1}/{self.max_retries} after {delay:.1f}s",
                    extra={**e.log_extra(), "attempt": attempt + 1, "delay": round(delay, 2)},
                )
                if self.metrics is not None:
                    self.metrics.current.record_retry(self.service, e.status)
                if self.circuit_breaker is not None:
                    self.circuit_breaker.record_failure()

                await asyncio.sleep(delay)
                attempt += 1

    def _exhausted(
        self, call: CallSpec, last_error: RetryableTransportError
    ) -> ExhaustedRetriesError:
        exhausted = ExhaustedRetriesError(
            last_error, attempts=self.max_retries + 1, service=self.service
        )
        logger.error(
            f"{call.method} {call.url} failed after {exhausted.attempts} attempts",
            extra=exhausted.log_extra(),
        )
        if self.metrics is not None:
            self.metrics.current.record_exhausted(self.service)
        return exhausted

    async def _send(self, call: CallSpec) -> Any:
        """Perform one attempt and classify the outcome."""
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=call.timeout or self.timeout)

        try:
            async with session.request(
                call.method,
                call.url,
                headers=call.headers,
                params=call.params,
                json=call.json,
                timeout=timeout,
            ) as resp:
                if resp.status in self.retryable_status_codes:
                    raise RetryableTransportError(
                        f"{call.method} {call.url} returned {resp.status}",
                        status=resp.status,
                        retry_after=parse_retry_after(resp.headers.get("Retry-After")),
                        service=self.service,
                    )

                body = await self._read_body(resp)

                if 200 <= resp.status < 300:
                    return body

                error = NonRetryableError(
                    f"{call.method} {call.url} returned {resp.status}",
                    status=resp.status,
                    body=body,
                    service=self.service,
                )
                logger.error("Non-retryable response", extra=error.log_extra())
                raise error

        except ResearchCoreError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise classify_exception(e, self.service) from e

    @staticmethod
    async def _read_body(resp: aiohttp.ClientResponse) -> Any:
        raw = await resp.read()
        if not raw:
            return None
        try:
            text = raw.decode(resp.charset or "utf-8", errors="replace")
        except LookupError:
            text = raw.decode("utf-8", errors="replace")
        try:
            return json.loads(text)
        except ValueError:
            return text
