"""Per-service breakers and clients, and the shared rate limiter."""

from __future__ import annotations

from typing import Any

from research_core.config.settings import Settings
from research_core.observability.logger import get_logger
from research_core.observability.metrics import MetricsCollector

from .circuit_breaker import CircuitBreaker
from .rate_limiter import RateLimiter

logger = get_logger(__name__)


class ResilienceRegistry:
    """Owns one CircuitBreaker and one ResilientClient per service.

    Breakers and clients are created lazily on first use and shared by every
    caller of that service.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        metrics: MetricsCollector | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or MetricsCollector()
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.provider_limits(),
            fail_safe_delay=settings.rate_limit_fail_safe_delay,
            metrics=self.metrics,
        )
        self._breakers: dict[str, CircuitBreaker] = {}
        # service -> ResilientClient
        self._clients: dict[str, Any] = {}

    def breaker(self, service: str) -> CircuitBreaker:
        """Get or create the breaker for a service."""
        breaker = self._breakers.get(service)
        if breaker is None:
            config = self.settings.breaker_config(service)
            breaker = CircuitBreaker(service=service, metrics=self.metrics, **config)
            self._breakers[service] = breaker
            logger.debug(f"Created circuit breaker for {service}", extra=config)
        return breaker

    def client(self, service: str, **overrides: Any) -> Any:
        """Get or create the ResilientClient for a service.

        Overrides only apply when the client is first created.
        """
        from research_core.clients.resilient_client import ResilientClient

        client = self._clients.get(service)
        if client is None:
            options: dict[str, Any] = {
                "max_retries": self.settings.max_retries,
                "retry_delay": self.settings.retry_delay,
                "max_delay": self.settings.retry_max_delay,
                "timeout": self.settings.request_timeout,
            }
            options.update(overrides)
            client = ResilientClient(
                service,
                circuit_breaker=self.breaker(service),
                metrics=self.metrics,
                **options,
            )
            self._clients[service] = client
        return client

    @property
    def services(self) -> list[str]:
        return sorted(self._breakers)

    def circuit_stats(self) -> dict[str, dict[str, Any]]:
        """Stats for every breaker created so far."""
        return {service: breaker.get_stats() for service, breaker in sorted(self._breakers.items())}

    async def close(self) -> None:
        """Close every client session."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
