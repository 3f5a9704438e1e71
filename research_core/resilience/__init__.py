"""Resilience components for outbound provider calls.

Provides fault tolerance patterns for LLM provider APIs:
- CircuitBreaker: Prevents cascade failures
- ExponentialBackoff: Retry delays with jitter
- RateLimiter: Sliding windows per provider
- ResilienceRegistry: Shared breakers, clients and limiter
"""

from .backoff import ExponentialBackoff, parse_retry_after
from .circuit_breaker import CircuitBreaker, CircuitState
from .rate_limiter import ProviderLimits, RateLimiter, RateWindow
from .registry import ResilienceRegistry

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "ExponentialBackoff",
    "parse_retry_after",
    "ProviderLimits",
    "RateLimiter",
    "RateWindow",
    "ResilienceRegistry",
]
