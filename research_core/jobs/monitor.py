"""Periodic queue health inspection.

Alerts are advisory: they are logged and counted, never acted upon.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from research_core.config.constants import (
    MONITOR_BACKLOG_THRESHOLD,
    MONITOR_FAILURE_RATE_THRESHOLD,
    MONITOR_INTERVAL,
    MONITOR_MIN_FINISHED,
)
from research_core.observability.logger import get_logger
from research_core.observability.metrics import MetricsCollector

from .models import JobCounts

if TYPE_CHECKING:
    from .queue import JobQueue

logger = get_logger(__name__)


@dataclass
class QueueAlert:
    """A threshold breach found by the monitor."""

    queue: str
    kind: str  # "backlog" or "failure_rate"
    value: float
    threshold: float

    @property
    def message(self) -> str:
        if self.kind == "backlog":
            return (
                f"Queue {self.queue} backlog: {int(self.value)} waiting "
                f"(threshold {int(self.threshold)})"
            )
        return (
            f"Queue {self.queue} failure rate {self.value:.0%} "
            f"exceeds {self.threshold:.0%}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "kind": self.kind,
            "value": self.value,
            "threshold": self.threshold,
            "message": self.message,
        }


@dataclass
class QueueHealth:
    """Counts and alerts for one queue at one point in time."""

    queue: str
    counts: JobCounts
    alerts: list[QueueAlert] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.alerts

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "healthy": self.healthy,
            "counts": self.counts.to_dict(),
            "failure_rate": round(self.counts.failure_rate, 4),
            "alerts": [alert.to_dict() for alert in self.alerts],
        }


@dataclass
class QueueMonitor:
    """Inspect every registered queue on an interval.

    Usage:
        monitor = QueueMonitor(job_queue, interval=60)
        monitor.start()
        ...
        await monitor.stop()
    """

    job_queue: JobQueue
    interval: float = MONITOR_INTERVAL
    backlog_threshold: int = MONITOR_BACKLOG_THRESHOLD
    failure_rate_threshold: float = MONITOR_FAILURE_RATE_THRESHOLD
    min_finished: int = MONITOR_MIN_FINISHED
    metrics: MetricsCollector | None = None

    _task: asyncio.Task | None = field(default=None, init=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def evaluate(self, queue: str, counts: JobCounts) -> QueueHealth:
        """Compare one queue's counts against the thresholds."""
        health = QueueHealth(queue, counts)

        if counts.waiting > self.backlog_threshold:
            health.alerts.append(
                QueueAlert(queue, "backlog", counts.waiting, self.backlog_threshold)
            )

        if (
            counts.finished >= self.min_finished
            and counts.failure_rate > self.failure_rate_threshold
        ):
            health.alerts.append(
                QueueAlert(queue, "failure_rate", counts.failure_rate, self.failure_rate_threshold)
            )

        return health

    async def check(self, queue_names: list[str] | None = None) -> list[QueueHealth]:
        """Run one inspection pass.

        Args:
            queue_names: Queues to inspect (default: every registered queue)
        """
        names = queue_names if queue_names is not None else self.job_queue.queue_names
        report = []

        for name in names:
            counts = await self.job_queue.get_job_counts(name)
            health = self.evaluate(name, counts)
            for alert in health.alerts:
                logger.warning(alert.message, extra={"queue": name, "alert": alert.kind})
                if self.metrics is not None:
                    self.metrics.current.record_monitor_alert(name, alert.kind)
            report.append(health)

        return report

    def start(self) -> asyncio.Task:
        """Start the periodic task (idempotent)."""
        if self._task is not None and not self._task.done():
            return self._task

        task = asyncio.create_task(self._run(), name="queue-monitor")
        self._task = task
        logger.info(f"Queue monitoring started (every {self.interval:.0f}s)")
        return task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except Exception as e:
                # Keep the loop alive
                logger.error(
                    f"Queue health check failed: {e}",
                    extra={"error_type": type(e).__name__},
                    exc_info=True,
                )
