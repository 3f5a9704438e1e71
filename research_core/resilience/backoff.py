"""Backoff policy for retried HTTP calls."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from research_core.config.constants import (
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_RETRY_DELAY,
    RETRY_ESCALATION_AFTER,
    RETRY_ESCALATION_FACTOR,
    RETRY_JITTER_RATIO,
)


@dataclass
class ExponentialBackoff:
    """Exponential backoff with proportional jitter and late escalation.

    delay = base * 2^attempt
    delay += uniform(0, jitter_ratio * delay)
    delay *= escalation_factor  (once attempt > escalate_after)
    delay = min(delay, max_delay)

    Example with defaults (before jitter):
        attempt 0: 1s
        attempt 1: 2s
        attempt 2: 4s
        attempt 3: 12s
        attempt 4: 24s
    """

    base: float = DEFAULT_RETRY_DELAY
    max_delay: float = DEFAULT_MAX_RETRY_DELAY
    jitter_ratio: float = RETRY_JITTER_RATIO
    escalate_after: int = RETRY_ESCALATION_AFTER
    escalation_factor: float = RETRY_ESCALATION_FACTOR

    def next_delay(self, attempt: int) -> float:
        """Calculate delay before retrying after the given attempt (0-indexed)."""
        delay = self.base * (2**attempt)
        if self.jitter_ratio > 0:
            delay += random.uniform(0, self.jitter_ratio * delay)
        if attempt > self.escalate_after:
            delay *= self.escalation_factor
        return min(delay, self.max_delay)


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds ("2", "1.5") or an HTTP date. Returns None when the
    header is missing or unparseable. Dates in the past yield 0.
    """
    if not value:
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())
