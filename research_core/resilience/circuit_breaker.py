"""Circuit Breaker pattern for cascade failure prevention.

State transitions:
CLOSED (normal) → [failure_threshold consecutive failures] → OPEN (blocked)
OPEN → [reset_timeout wait] → HALF_OPEN (testing)
HALF_OPEN → [success_threshold successes] → CLOSED
HALF_OPEN → [any failure] → OPEN
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from research_core.config.constants import (
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_RESET_TIMEOUT,
    DEFAULT_SUCCESS_THRESHOLD,
    STATE_HISTORY_LIMIT,
)
from research_core.core.errors import CircuitOpenError
from research_core.observability.logger import get_logger
from research_core.observability.metrics import MetricsCollector

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, rejecting calls
    HALF_OPEN = "half_open"  # Testing if recovered


@dataclass(frozen=True)
class StateChange:
    """One entry of the breaker's transition history."""

    timestamp: datetime
    state: CircuitState
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "state": self.state.value,
            "reason": self.reason,
        }


@dataclass
class CircuitBreaker:
    """Circuit breaker for one downstream service.

    Usage:
        breaker = CircuitBreaker("perplexity", failure_threshold=3, reset_timeout=300)

        result = await breaker.execute(risky_operation, arg1)

        # Or drive it manually:
        if not breaker.is_open():
            try:
                await call()
                breaker.record_success()
            except Exception:
                breaker.record_failure()
                raise
    """

    # Configuration
    service: str = "default"
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    success_threshold: int = DEFAULT_SUCCESS_THRESHOLD
    reset_timeout: float = DEFAULT_RESET_TIMEOUT  # seconds
    clock: Callable[[], float] = time.monotonic
    metrics: MetricsCollector | None = None

    # State
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _next_attempt_at: float = field(default=0.0, init=False)
    _last_failure_at: datetime | None = field(default=None, init=False)
    _history: deque[StateChange] = field(
        default_factory=lambda: deque(maxlen=STATE_HISTORY_LIMIT), init=False
    )

    def __post_init__(self) -> None:
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError("Circuit breaker thresholds must be at least 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be non-negative")
        self._history.append(
            StateChange(datetime.now(timezone.utc), CircuitState.CLOSED, "initialized")
        )

    @property
    def state(self) -> CircuitState:
        """Get current circuit state without triggering transitions."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def history(self) -> list[StateChange]:
        """Recent transitions, oldest first."""
        return list(self._history)

    def is_open(self) -> bool:
        """Check whether calls must be rejected right now.

        An OPEN circuit whose reset timeout has elapsed moves to HALF_OPEN
        and admits the call.
        """
        if self._state != CircuitState.OPEN:
            return False

        if self.clock() >= self._next_attempt_at:
            self._transition(CircuitState.HALF_OPEN, "reset timeout elapsed")
            self._success_count = 0
            return False

        return True

    async def execute(
        self,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Execute function with circuit breaker protection.

        Args:
            func: Async or sync function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            CircuitOpenError: If circuit is open (func is not called)
            Original exception: If function fails
        """
        if self.is_open():
            if self.metrics is not None:
                self.metrics.current.record_circuit_rejection(self.service)
            remaining = max(0.0, self._next_attempt_at - self.clock())
            raise CircuitOpenError(
                f"Circuit for {self.service} is OPEN. Retry in {remaining:.0f}s",
                service=self.service,
                reset_at=self.reset_at,
            )

        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        """Record a successful call."""
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._transition(
                    CircuitState.CLOSED,
                    f"{self._success_count} successful calls after recovery",
                )
                self._failure_count = 0
                self._success_count = 0

        elif self._state == CircuitState.CLOSED:
            # Consecutive failures only
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_at = datetime.now(timezone.utc)

        if self._state == CircuitState.HALF_OPEN:
            self._open("failure while half-open")

        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.failure_threshold:
                self._open(f"{self._failure_count} consecutive failures")

    def get_state(self) -> CircuitState:
        """Get current state, applying any due OPEN → HALF_OPEN transition."""
        self.is_open()
        return self._state

    @property
    def reset_at(self) -> datetime | None:
        """Wall-clock time at which an open circuit admits a trial call."""
        if self._state != CircuitState.OPEN:
            return None
        remaining = max(0.0, self._next_attempt_at - self.clock())
        return datetime.now(timezone.utc) + timedelta(seconds=remaining)

    def get_stats(self) -> dict[str, Any]:
        """Snapshot for health endpoints and the CLI."""
        reset_at = self.reset_at
        return {
            "service": self.service,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "reset_timeout": self.reset_timeout,
            "last_failure_at": self._last_failure_at.isoformat() if self._last_failure_at else None,
            "reset_at": reset_at.isoformat() if reset_at else None,
            "recent_transitions": [change.to_dict() for change in list(self._history)[-10:]],
        }

    def force_state(self, state: CircuitState, reason: str = "forced") -> None:
        """Put the breaker into a state manually (operator override)."""
        state = CircuitState(state)
        if state == CircuitState.OPEN:
            self._open(reason)
            return

        self._transition(state, reason)
        self._success_count = 0
        if state == CircuitState.CLOSED:
            self._failure_count = 0

    def reset(self) -> None:
        """Reset circuit breaker to initial state."""
        self._transition(CircuitState.CLOSED, "reset")
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt_at = 0.0
        self._last_failure_at = None

    def _open(self, reason: str) -> None:
        self._transition(CircuitState.OPEN, reason)
        self._next_attempt_at = self.clock() + self.reset_timeout
        self._success_count = 0

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        old_state = self._state
        self._state = new_state
        self._history.append(StateChange(datetime.now(timezone.utc), new_state, reason))

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker {old_state.value} -> {new_state.value}",
            extra={
                "service": self.service,
                "reason": reason,
                "failure_count": self._failure_count,
            },
        )

        if self.metrics is not None:
            self.metrics.current.record_circuit_transition(
                self.service, old_state.value, new_state.value
            )
