"""Composition root: builds the resilience registry and job queue once."""

from __future__ import annotations

from dataclasses import dataclass

from research_core.config.settings import Settings, get_settings
from research_core.jobs.backends import MemoryQueueBackend, QueueBackend, RedisQueueBackend
from research_core.jobs.models import JobOptions
from research_core.jobs.queue import JobQueue, ThrottlePolicy
from research_core.observability.logger import get_logger
from research_core.observability.metrics import MetricsCollector
from research_core.resilience.registry import ResilienceRegistry

logger = get_logger(__name__)


def build_backend(settings: Settings, metrics: MetricsCollector | None = None) -> QueueBackend:
    """Pick the queue backend from settings."""
    retention = {
        "remove_on_complete": settings.remove_on_complete,
        "remove_on_fail": settings.remove_on_fail,
        "metrics": metrics,
    }
    if settings.has_redis and settings.redis_url:
        logger.info("Using Redis queue backend")
        return RedisQueueBackend.from_url(
            settings.redis_url,
            prefix=settings.queue_prefix,
            poll_interval=settings.redis_poll_interval,
            **retention,
        )

    logger.info("Using in-memory queue backend")
    return MemoryQueueBackend(**retention)


@dataclass
class Runtime:
    """Everything a process needs, created together and closed together.

    Usage:
        runtime = Runtime.from_settings(get_settings())
        client = runtime.registry.client("perplexity")
        job_id = await runtime.jobs.enqueue_job("research", {"query": "..."})
        await runtime.close()
    """

    settings: Settings
    metrics: MetricsCollector
    registry: ResilienceRegistry
    jobs: JobQueue

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        backend: QueueBackend | None = None,
    ) -> Runtime:
        """Build a runtime.

        Args:
            settings: Settings to use (default: get_settings())
            backend: Queue backend override, mainly for tests
        """
        settings = settings or get_settings()
        metrics = MetricsCollector()
        registry = ResilienceRegistry(settings, metrics=metrics)

        jobs = JobQueue(
            backend or build_backend(settings, metrics),
            default_options=JobOptions(
                max_attempts=settings.job_attempts,
                backoff_delay=settings.job_backoff_delay,
            ),
            throttle=ThrottlePolicy(
                backlog_threshold=settings.throttle_backlog_threshold,
                step_delay=settings.throttle_step_delay,
                min_delay=settings.throttle_min_delay,
            ),
            rate_limiter=registry.rate_limiter,
            metrics=metrics,
            monitor_options={
                "interval": settings.monitor_interval,
                "backlog_threshold": settings.monitor_backlog_threshold,
                "failure_rate_threshold": settings.monitor_failure_rate_threshold,
                "min_finished": settings.monitor_min_finished,
            },
        )
        return cls(settings=settings, metrics=metrics, registry=registry, jobs=jobs)

    async def close(self) -> None:
        await self.jobs.close()
        await self.registry.close()
        logger.info("Runtime closed", extra={"summary": self.metrics.get_stats()})

    async def __aenter__(self) -> Runtime:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
