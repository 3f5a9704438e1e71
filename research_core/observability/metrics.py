"""Metrics collection for research core.

Tracks retries, circuit transitions, rate-limit waits, job outcomes
and monitor alerts.

Usage:
    from research_core.observability import MetricsCollector

    metrics = MetricsCollector()
    metrics.current.record_retry("perplexity", status=503)
    metrics.current.record_job_outcome("deep-research", "completed", duration=12.5)

    print(metrics.current.to_summary())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


def _bump(counter: dict[str, int], key: str, count: int = 1) -> None:
    counter[key] = counter.get(key, 0) + count


@dataclass
class ResilienceMetrics:
    """Counters for one process lifetime.

    Every counter is keyed by service, provider or queue name.
    """

    started_at: datetime = field(default_factory=datetime.now)

    # Outbound calls
    retries: dict[str, int] = field(default_factory=dict)
    retries_by_status: dict[str, int] = field(default_factory=dict)
    exhausted: dict[str, int] = field(default_factory=dict)
    circuit_rejections: dict[str, int] = field(default_factory=dict)

    # Circuit transitions, keyed "service:from->to"
    circuit_transitions: dict[str, int] = field(default_factory=dict)

    # Rate limiting
    rate_limit_waits: dict[str, int] = field(default_factory=dict)
    rate_limit_wait_seconds: dict[str, float] = field(default_factory=dict)

    # Jobs, keyed "queue:outcome"
    job_outcomes: dict[str, int] = field(default_factory=dict)
    job_durations: dict[str, float] = field(default_factory=dict)
    jobs_throttled: dict[str, int] = field(default_factory=dict)

    # Monitor alerts, keyed "queue:kind"
    monitor_alerts: dict[str, int] = field(default_factory=dict)

    @property
    def uptime_seconds(self) -> float:
        """Seconds since these metrics were created."""
        return (datetime.now() - self.started_at).total_seconds()

    @property
    def total_retries(self) -> int:
        return sum(self.retries.values())

    @property
    def circuit_trips(self) -> int:
        """Number of transitions into the open state."""
        return sum(
            count for key, count in self.circuit_transitions.items() if key.endswith("->open")
        )

    def record_retry(self, service: str, status: int | None = None) -> None:
        """Record a retried attempt."""
        _bump(self.retries, service)
        _bump(self.retries_by_status, str(status) if status is not None else "network")

    def record_exhausted(self, service: str) -> None:
        """Record a call that ran out of retries."""
        _bump(self.exhausted, service)

    def record_circuit_rejection(self, service: str) -> None:
        """Record a call rejected by an open circuit."""
        _bump(self.circuit_rejections, service)

    def record_circuit_transition(self, service: str, from_state: str, to_state: str) -> None:
        """Record a circuit state change."""
        _bump(self.circuit_transitions, f"{service}:{from_state}->{to_state}")

    def record_rate_limit_wait(self, provider: str, seconds: float) -> None:
        """Record a wait imposed by the rate limiter."""
        _bump(self.rate_limit_waits, provider)
        self.rate_limit_wait_seconds[provider] = (
            self.rate_limit_wait_seconds.get(provider, 0.0) + seconds
        )

    def record_job_outcome(self, queue: str, outcome: str, duration: float | None = None) -> None:
        """Record a job attempt outcome (completed, retried, failed)."""
        _bump(self.job_outcomes, f"{queue}:{outcome}")
        if duration is not None:
            self.job_durations[queue] = self.job_durations.get(queue, 0.0) + duration

    def record_throttled(self, queue: str) -> None:
        """Record an enqueue that received an injected delay."""
        _bump(self.jobs_throttled, queue)

    def record_monitor_alert(self, queue: str, kind: str) -> None:
        """Record a queue health alert."""
        _bump(self.monitor_alerts, f"{queue}:{kind}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/storage."""
        return {
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 2),
            "retries": dict(self.retries),
            "retries_by_status": dict(self.retries_by_status),
            "exhausted": dict(self.exhausted),
            "circuit_rejections": dict(self.circuit_rejections),
            "circuit_transitions": dict(self.circuit_transitions),
            "rate_limit_waits": dict(self.rate_limit_waits),
            "rate_limit_wait_seconds": {
                k: round(v, 2) for k, v in self.rate_limit_wait_seconds.items()
            },
            "job_outcomes": dict(self.job_outcomes),
            "jobs_throttled": dict(self.jobs_throttled),
            "monitor_alerts": dict(self.monitor_alerts),
        }

    def to_summary(self) -> str:
        """Generate human-readable summary."""
        lines = [
            "Resilience Summary",
            "=" * 40,
            f"Uptime: {self.uptime_seconds:.1f}s",
            f"Retries: {self.total_retries}",
            f"Circuit trips: {self.circuit_trips}",
        ]

        if self.retries:
            lines.append("")
            lines.append("Retries by Service:")
            for service, count in sorted(self.retries.items(), key=lambda x: -x[1]):
                lines.append(f"  {service}: {count}")

        if self.rate_limit_waits:
            lines.append("")
            lines.append("Rate Limit Waits:")
            for provider, count in self.rate_limit_waits.items():
                waited = self.rate_limit_wait_seconds.get(provider, 0.0)
                lines.append(f"  {provider}: {count} ({waited:.1f}s)")

        if self.job_outcomes:
            lines.append("")
            lines.append("Job Outcomes:")
            for key, count in sorted(self.job_outcomes.items()):
                lines.append(f"  {key}: {count}")

        if self.monitor_alerts:
            lines.append("")
            lines.append("Monitor Alerts:")
            for key, count in sorted(self.monitor_alerts.items()):
                lines.append(f"  {key}: {count}")

        return "\n".join(lines)


class MetricsCollector:
    """Hold the metrics for one process.

    Created by the Runtime and passed to every component that reports.
    """

    def __init__(self) -> None:
        self._current = ResilienceMetrics()
        self._history: list[ResilienceMetrics] = []

    @property
    def current(self) -> ResilienceMetrics:
        """Get current metrics."""
        return self._current

    @property
    def history(self) -> list[ResilienceMetrics]:
        """Get snapshots taken by rotate()."""
        return self._history.copy()

    def rotate(self) -> ResilienceMetrics:
        """Archive the current metrics and start fresh counters."""
        previous = self._current
        self._history.append(previous)
        self._current = ResilienceMetrics()
        return previous

    def get_summary(self) -> str:
        return self._current.to_summary()

    def get_stats(self) -> dict[str, Any]:
        """Get current counters as a dict."""
        return self._current.to_dict()
