"""Sliding-window rate limiter for LLM providers.

Tracks request timestamps per provider and compares them against the
provider's ceilings:
- Ordinary requests per minute (and per hour / per day when configured)
- Expensive requests (deep research) in their own longer window
- Tokens per minute
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Awaitable, Callable

from research_core.config.constants import (
    DAY_WINDOW,
    DEFAULT_EXPENSIVE_WINDOW,
    HOUR_WINDOW,
    MINUTE_WINDOW,
    RATE_LIMIT_FAIL_SAFE_DELAY,
)
from research_core.observability.logger import get_logger
from research_core.observability.metrics import MetricsCollector

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateWindow:
    """A window length in seconds and the most entries allowed inside it."""

    length: float
    ceiling: int
    label: str = ""


@dataclass
class ProviderLimits:
    """Rate-limit ceilings for one provider. None disables a window."""

    requests_per_minute: int
    requests_per_hour: int | None = None
    requests_per_day: int | None = None
    tokens_per_minute: int | None = None
    expensive_per_window: int | None = None
    expensive_window_seconds: float = DEFAULT_EXPENSIVE_WINDOW

    def request_windows(self) -> list[RateWindow]:
        """Windows applied to every request, shortest first."""
        windows = [RateWindow(MINUTE_WINDOW, self.requests_per_minute, "minute")]
        if self.requests_per_hour is not None:
            windows.append(RateWindow(HOUR_WINDOW, self.requests_per_hour, "hour"))
        if self.requests_per_day is not None:
            windows.append(RateWindow(DAY_WINDOW, self.requests_per_day, "day"))
        return windows

    def expensive_window(self) -> RateWindow | None:
        if self.expensive_per_window is None:
            return None
        return RateWindow(self.expensive_window_seconds, self.expensive_per_window, "expensive")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _ProviderUsage:
    """Timestamps recorded for one provider, oldest first."""

    requests: deque[float] = field(default_factory=deque)
    expensive: deque[float] = field(default_factory=deque)
    tokens: deque[tuple[float, int]] = field(default_factory=deque)


def _count_since(timestamps: deque[float], cutoff: float) -> int:
    return sum(1 for ts in timestamps if ts > cutoff)


def _valid_limit(name: str, value: Any) -> bool:
    if value is None:
        return name != "requests_per_minute"
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if name == "expensive_window_seconds":
        return value > 0
    return value >= 0


def _percent(used: int, ceiling: int) -> float:
    if ceiling <= 0:
        return 100.0
    return round(used / ceiling * 100, 2)


def _delay_for_window(timestamps: deque[float], window: RateWindow, now: float) -> float:
    """Seconds until one more entry fits in the window."""
    if window.ceiling <= 0:
        # A zero ceiling blocks the provider; re-check once per window
        return window.length
    inside = [ts for ts in timestamps if ts > now - window.length]
    if len(inside) < window.ceiling:
        return 0.0
    # The entry that must expire so that len(inside) drops below the ceiling
    pivot = inside[len(inside) - window.ceiling]
    return max(0.0, pivot + window.length - now)


class RateLimiter:
    """Per-provider sliding-window rate limiter.

    Usage:
        limiter = RateLimiter({"perplexity": ProviderLimits(requests_per_minute=20)})

        if not limiter.would_exceed_rate_limit("perplexity"):
            await call()
            limiter.record_request("perplexity")

        # Or let the limiter pace the call:
        result = await limiter.schedule(call, "perplexity", expensive=True)
    """

    def __init__(
        self,
        limits: dict[str, ProviderLimits] | None = None,
        *,
        fail_safe_delay: float = RATE_LIMIT_FAIL_SAFE_DELAY,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._limits: dict[str, ProviderLimits] = {}
        self._usage: dict[str, _ProviderUsage] = {}
        self.fail_safe_delay = fail_safe_delay
        self.clock = clock
        self.metrics = metrics

        for provider, provider_limits in (limits or {}).items():
            self.register_provider(provider, provider_limits)

    @property
    def providers(self) -> list[str]:
        """Names of all known providers."""
        return list(self._limits)

    def register_provider(self, provider: str, limits: ProviderLimits) -> None:
        """Add or replace a provider's limits, keeping recorded usage."""
        self._limits[provider] = limits
        self._usage.setdefault(provider, _ProviderUsage())

    def get_limits(self, provider: str) -> ProviderLimits | None:
        return self._limits.get(provider)

    def _prune(self, provider: str, now: float) -> _ProviderUsage:
        limits = self._limits[provider]
        usage = self._usage[provider]

        longest = max(window.length for window in limits.request_windows())
        while usage.requests and usage.requests[0] <= now - longest:
            usage.requests.popleft()

        expensive = limits.expensive_window()
        expensive_length = expensive.length if expensive else DEFAULT_EXPENSIVE_WINDOW
        while usage.expensive and usage.expensive[0] <= now - expensive_length:
            usage.expensive.popleft()

        while usage.tokens and usage.tokens[0][0] <= now - MINUTE_WINDOW:
            usage.tokens.popleft()

        return usage

    def record_request(
        self,
        provider: str,
        *,
        expensive: bool = False,
        tokens_used: int = 0,
    ) -> None:
        """Record a request against the provider's windows."""
        if provider not in self._limits:
            logger.error(f"Unknown provider: {provider}", extra={"provider": provider})
            return

        now = self.clock()
        usage = self._prune(provider, now)
        usage.requests.append(now)
        if expensive:
            usage.expensive.append(now)
        if tokens_used > 0:
            usage.tokens.append((now, tokens_used))

        logger.debug(
            f"Recorded {provider} request",
            extra={"provider": provider, "expensive": expensive, "tokens_used": tokens_used},
        )

    def would_exceed_rate_limit(
        self,
        provider: str,
        *,
        expensive: bool = False,
        estimated_tokens: int = 0,
    ) -> bool:
        """Check if one more request now would exceed any ceiling.

        Unknown providers always report True.
        """
        if provider not in self._limits:
            logger.error(f"Unknown provider: {provider}", extra={"provider": provider})
            return True

        now = self.clock()
        limits = self._limits[provider]
        usage = self._prune(provider, now)

        for window in limits.request_windows():
            if _count_since(usage.requests, now - window.length) >= window.ceiling:
                logger.warning(
                    f"{provider} rate limit reached: {window.ceiling} requests per {window.label}",
                    extra={"provider": provider, "window": window.label},
                )
                return True

        if limits.tokens_per_minute is not None:
            used = sum(tokens for _, tokens in usage.tokens)
            if used + estimated_tokens > limits.tokens_per_minute:
                logger.warning(
                    f"{provider} token limit reached: {limits.tokens_per_minute} tokens per minute",
                    extra={"provider": provider, "tokens_used": used},
                )
                return True

        expensive_window = limits.expensive_window()
        if expensive and expensive_window is not None:
            if len(usage.expensive) >= expensive_window.ceiling:
                logger.warning(
                    f"{provider} expensive request limit reached: "
                    f"{expensive_window.ceiling} per {expensive_window.length:.0f}s",
                    extra={"provider": provider, "window": "expensive"},
                )
                return True

        return False

    def get_required_delay(
        self,
        provider: str,
        *,
        expensive: bool = False,
        tokens: int = 0,
    ) -> float:
        """Minimum wait in seconds before one more request fits every window.

        Unknown providers get the fail-safe delay.
        """
        if provider not in self._limits:
            return self.fail_safe_delay

        now = self.clock()
        limits = self._limits[provider]
        usage = self._prune(provider, now)

        delays = [0.0]
        for window in limits.request_windows():
            delays.append(_delay_for_window(usage.requests, window, now))

        expensive_window = limits.expensive_window()
        if expensive and expensive_window is not None:
            delays.append(_delay_for_window(usage.expensive, expensive_window, now))

        if limits.tokens_per_minute is not None and usage.tokens:
            used = sum(count for _, count in usage.tokens)
            for ts, count in usage.tokens:
                if used + tokens <= limits.tokens_per_minute:
                    break
                used -= count
                delays.append(max(0.0, ts + MINUTE_WINDOW - now))

        return max(delays)

    async def schedule(
        self,
        task_fn: Callable[[], Awaitable[Any]],
        provider: str,
        *,
        expensive: bool = False,
        tokens: int = 0,
    ) -> Any:
        """Wait until the request fits, run task_fn, then record the request.

        Only the calling task is suspended. The task's result is returned and
        its exception propagates; the limiter itself never raises.
        """
        if provider not in self._limits:
            logger.error(
                f"Unknown provider: {provider}, applying fail-safe delay",
                extra={"provider": provider, "delay": self.fail_safe_delay},
            )
            await asyncio.sleep(self.fail_safe_delay)
            return await task_fn()

        waited = 0.0
        while True:
            delay = self.get_required_delay(provider, expensive=expensive, tokens=tokens)
            if delay <= 0:
                break
            logger.info(
                f"Rate limit for {provider}: waiting {delay:.1f}s",
                extra={"provider": provider, "delay": round(delay, 2), "expensive": expensive},
            )
            await asyncio.sleep(delay)
            waited += delay

        if waited > 0 and self.metrics is not None:
            self.metrics.current.record_rate_limit_wait(provider, waited)

        try:
            return await task_fn()
        finally:
            self.record_request(provider, expensive=expensive, tokens_used=tokens)

    async def wait_for_rate_limit(
        self,
        provider: str,
        *,
        expensive: bool = False,
        estimated_tokens: int = 0,
        max_wait: float = MINUTE_WINDOW,
        poll_interval: float = 1.0,
    ) -> bool:
        """Poll until a request would fit.

        Returns:
            True when ready to proceed, False if max_wait was exceeded
        """
        start = self.clock()
        while self.would_exceed_rate_limit(
            provider, expensive=expensive, estimated_tokens=estimated_tokens
        ):
            elapsed = self.clock() - start
            if elapsed >= max_wait:
                logger.warning(
                    f"Rate limit wait timeout exceeded for {provider}",
                    extra={"provider": provider, "max_wait": max_wait},
                )
                return False
            await asyncio.sleep(poll_interval)

        return True

    def get_rate_limit_stats(self, provider: str) -> dict[str, Any]:
        """Current usage against each configured ceiling."""
        if provider not in self._limits:
            return {"error": f"Unknown provider: {provider}"}

        now = self.clock()
        limits = self._limits[provider]
        usage = self._prune(provider, now)

        requests_last_minute = _count_since(usage.requests, now - MINUTE_WINDOW)
        requests_last_hour = _count_since(usage.requests, now - HOUR_WINDOW)
        requests_last_day = _count_since(usage.requests, now - DAY_WINDOW)

        stats: dict[str, Any] = {
            "provider": provider,
            "requests_last_minute": requests_last_minute,
            "requests_last_hour": requests_last_hour,
            "requests_last_day": requests_last_day,
            "minute_usage_percent": _percent(requests_last_minute, limits.requests_per_minute),
            "limits": limits.to_dict(),
        }

        if limits.requests_per_hour is not None:
            stats["hourly_usage_percent"] = _percent(requests_last_hour, limits.requests_per_hour)
        if limits.requests_per_day is not None:
            stats["daily_usage_percent"] = _percent(requests_last_day, limits.requests_per_day)
        if limits.tokens_per_minute is not None:
            tokens_last_minute = sum(count for _, count in usage.tokens)
            stats["tokens_last_minute"] = tokens_last_minute
            stats["tokens_usage_percent"] = _percent(tokens_last_minute, limits.tokens_per_minute)
        if limits.expensive_per_window is not None:
            stats["expensive_in_window"] = len(usage.expensive)
            stats["expensive_usage_percent"] = _percent(
                len(usage.expensive), limits.expensive_per_window
            )

        return stats

    def update_rate_limit_config(self, provider: str, **partial: Any) -> None:
        """Merge new ceilings into a provider's limits.

        Unknown providers, unknown fields and negative values are logged and
        ignored.
        """
        current = self._limits.get(provider)
        if current is None:
            logger.error(
                f"Unknown provider for rate limit config update: {provider}",
                extra={"provider": provider},
            )
            return

        known = {f.name for f in fields(ProviderLimits)}
        ignored = sorted(set(partial) - known)
        if ignored:
            logger.warning(
                f"Ignoring unknown rate limit settings for {provider}: {ignored}",
                extra={"provider": provider},
            )

        updates = {k: v for k, v in partial.items() if k in known}
        invalid = sorted(k for k, v in updates.items() if not _valid_limit(k, v))
        if invalid:
            logger.warning(
                f"Ignoring invalid rate limit values for {provider}: {invalid}",
                extra={"provider": provider},
            )
            updates = {k: v for k, v in updates.items() if k not in invalid}

        self._limits[provider] = replace(current, **updates)
        logger.info(
            f"Updated rate limit configuration for {provider}",
            extra={"provider": provider, "updates": updates},
        )
