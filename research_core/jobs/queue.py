"""Job queue facade over a durable or in-process backend.

Usage:
    queue = JobQueue(MemoryQueueBackend())

    async def research(job: JobHandle) -> dict:
        await job.report_progress(10)
        return await run_research(job.payload["query"])

    await queue.register_processor("deep-research", research, concurrency=2)
    job_id = await queue.enqueue_job(
        "deep-research",
        {"query": "...", "should_rate_limit": True, "provider": "perplexity"},
    )
    status = await queue.get_job_status("deep-research", job_id)
"""

from __future__ import annotations

import json
import time
import traceback
from dataclasses import dataclass, replace
from typing import Any

from research_core.config.constants import (
    DEFAULT_CONCURRENCY,
    THROTTLE_BACKLOG_THRESHOLD,
    THROTTLE_MIN_DELAY,
    THROTTLE_STEP_DELAY,
)
from research_core.core.errors import JobProcessingError
from research_core.observability.logger import get_logger, log_context
from research_core.observability.metrics import MetricsCollector
from research_core.resilience.rate_limiter import RateLimiter

from .backends.base import Handler, QueueBackend
from .models import Job, JobCounts, JobHandle, JobOptions, Processor
from .monitor import QueueHealth, QueueMonitor

logger = get_logger(__name__)


@dataclass
class ThrottlePolicy:
    """Enqueue-time delay for rate-limited job classes.

    Once active + waiting exceeds the backlog threshold, new jobs wait
    step_delay per waiting job (plus one), and at least min_delay.
    """

    backlog_threshold: int = THROTTLE_BACKLOG_THRESHOLD
    step_delay: float = THROTTLE_STEP_DELAY
    min_delay: float = THROTTLE_MIN_DELAY

    def delay_for(self, counts: JobCounts) -> float:
        if counts.active + counts.waiting <= self.backlog_threshold:
            return 0.0
        return max(self.step_delay * (counts.waiting + 1), self.min_delay)


@dataclass
class QueueRecord:
    """A queue known to this JobQueue."""

    name: str
    processor: Processor | None = None
    concurrency: int = 0


class JobQueue:
    """Enqueue, inspect and process jobs.

    The backend is chosen once by the caller (see Runtime). The queue
    registry lives on the instance.
    """

    def __init__(
        self,
        backend: QueueBackend,
        *,
        default_options: JobOptions | None = None,
        throttle: ThrottlePolicy | None = None,
        rate_limiter: RateLimiter | None = None,
        metrics: MetricsCollector | None = None,
        monitor_options: dict[str, Any] | None = None,
    ) -> None:
        self.backend = backend
        self.default_options = default_options or JobOptions()
        self.throttle = throttle or ThrottlePolicy()
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.monitor = QueueMonitor(self, metrics=metrics, **(monitor_options or {}))
        self._queues: dict[str, QueueRecord] = {}

    @property
    def backend_name(self) -> str:
        return self.backend.name

    @property
    def queue_names(self) -> list[str]:
        """Queues used through this instance, in first-use order."""
        return list(self._queues)

    def _record(self, queue_name: str) -> QueueRecord:
        record = self._queues.get(queue_name)
        if record is None:
            record = QueueRecord(queue_name)
            self._queues[queue_name] = record
        return record

    def _resolve_options(self, options: JobOptions | dict[str, Any] | None) -> JobOptions:
        if options is None:
            return replace(self.default_options)
        if isinstance(options, JobOptions):
            return options
        return replace(self.default_options, **options)

    async def enqueue_job(
        self,
        queue_name: str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> str:
        """Add a job and return its id.

        Payloads with a truthy `should_rate_limit` may receive an injected
        delay based on the queue's backlog and the provider's rate limits.
        """
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Job payload must be JSON-serialisable: {e}") from e

        self._record(queue_name)
        job_options = self._resolve_options(options)

        if payload.get("should_rate_limit"):
            injected = await self._throttle_delay(queue_name, payload)
            if injected > job_options.delay:
                job_options = replace(job_options, delay=injected)
                logger.info(
                    f"Rate limiting {queue_name} job",
                    extra={"queue": queue_name, "delay": round(injected, 2)},
                )
                if self.metrics is not None:
                    self.metrics.current.record_throttled(queue_name)

        job = await self.backend.add(queue_name, payload, job_options)
        return job.id

    async def _throttle_delay(self, queue_name: str, payload: dict[str, Any]) -> float:
        counts = await self.backend.counts(queue_name)
        delay = self.throttle.delay_for(counts)

        provider = payload.get("provider")
        if provider and self.rate_limiter is not None and provider in self.rate_limiter.providers:
            delay = max(delay, self.rate_limiter.get_required_delay(provider, expensive=True))

        return delay

    async def get_job_status(self, queue_name: str, job_id: str) -> Job:
        """Current job record, or a `not_found` placeholder."""
        job = await self.backend.get(queue_name, job_id)
        if job is None:
            return Job.not_found(job_id, queue_name)
        return job

    async def register_processor(
        self,
        queue_name: str,
        processor_fn: Processor,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        """Start processing the queue with processor_fn.

        At most `concurrency` jobs of the queue run at once in this process.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        record = self._record(queue_name)
        if record.processor is not None:
            raise ValueError(f"A processor is already registered for queue {queue_name}")

        record.processor = processor_fn
        record.concurrency = concurrency
        await self.backend.process(queue_name, self._wrap(queue_name, processor_fn), concurrency)
        logger.info(f"Registered processor for queue {queue_name} with concurrency {concurrency}")

    def _wrap(self, queue_name: str, processor_fn: Processor) -> Handler:
        async def handler(job: JobHandle) -> Any:
            started = time.monotonic()
            with log_context(queue=queue_name, job_id=job.id):
                logger.info(
                    f"Processing job {job.id} in queue {queue_name}",
                    extra={"attempt": job.attempts_made},
                )
                try:
                    result = await processor_fn(job)
                except Exception as e:
                    duration = time.monotonic() - started
                    logger.error(
                        f"Error processing job {job.id}: {e}",
                        extra={"duration": round(duration, 3), "attempt": job.attempts_made},
                    )
                    raise JobProcessingError(
                        str(e) or type(e).__name__,
                        stack=traceback.format_exc(),
                        job_id=job.id,
                        service=queue_name,
                    ) from e

                duration = time.monotonic() - started
                logger.info(
                    f"Job {job.id} processed in {duration:.2f}s",
                    extra={"duration": round(duration, 3)},
                )
                return result

        return handler

    async def get_job_counts(self, queue_name: str) -> JobCounts:
        return await self.backend.counts(queue_name)

    async def pause_queue(self, queue_name: str) -> None:
        """Stop activating jobs. Waiting jobs are kept."""
        self._record(queue_name)
        await self.backend.pause(queue_name)
        logger.info(f"Queue {queue_name} paused")

    async def resume_queue(self, queue_name: str) -> None:
        self._record(queue_name)
        await self.backend.resume(queue_name)
        logger.info(f"Queue {queue_name} resumed")

    async def is_paused(self, queue_name: str) -> bool:
        return await self.backend.is_paused(queue_name)

    async def cancel_job(self, job_id: str) -> bool:
        """Remove a waiting or delayed job.

        Returns:
            False when the job is active, finished or unknown
        """
        cancelled = await self.backend.remove(job_id)
        if cancelled:
            logger.info(f"Job {job_id} cancelled")
        return cancelled

    def start_monitoring(self) -> None:
        """Start the periodic health check."""
        self.monitor.start()

    async def check_queue_health(self, queue_names: list[str] | None = None) -> list[QueueHealth]:
        """Run one health check now."""
        return await self.monitor.check(queue_names)

    async def close(self) -> None:
        """Stop monitoring and workers, then close the backend."""
        await self.monitor.stop()
        await self.backend.close()
        self._queues.clear()
        logger.info("All job queues closed")
