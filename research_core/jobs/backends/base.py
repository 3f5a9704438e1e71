"""Queue backend interface and the attempt bookkeeping shared by backends."""

from __future__ import annotations

import traceback
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from research_core.config.constants import REMOVE_ON_COMPLETE, REMOVE_ON_FAIL
from research_core.core.errors import JobProcessingError
from research_core.observability.logger import get_logger
from research_core.observability.metrics import MetricsCollector

from ..models import Job, JobCounts, JobError, JobHandle, JobOptions, utc_now

logger = get_logger(__name__)

Handler = Callable[[JobHandle], Awaitable[Any]]


class QueueBackend(ABC):
    """Storage and dispatch for jobs.

    Subclasses store jobs and run worker loops. Attempt outcomes go through
    `_run_job`, which maps a handler's return or exception onto the job
    record via `_mark_completed`, `_mark_retry` and `_mark_failed`.
    """

    name = "base"

    def __init__(
        self,
        *,
        remove_on_complete: int = REMOVE_ON_COMPLETE,
        remove_on_fail: int = REMOVE_ON_FAIL,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self.metrics = metrics

    @abstractmethod
    async def add(self, queue_name: str, payload: dict[str, Any], options: JobOptions) -> Job:
        """Store a new job as waiting (or delayed when options.delay > 0)."""

    @abstractmethod
    async def find(self, job_id: str) -> Job | None:
        """Look a job up by id in any queue."""

    async def get(self, queue_name: str, job_id: str) -> Job | None:
        """Look a job up by id within one queue."""
        job = await self.find(job_id)
        if job is None or job.queue_name != queue_name:
            return None
        return job

    @abstractmethod
    async def process(self, queue_name: str, handler: Handler, concurrency: int) -> None:
        """Start `concurrency` workers that feed jobs of the queue to handler."""

    @abstractmethod
    async def counts(self, queue_name: str) -> JobCounts:
        """Number of jobs per state."""

    @abstractmethod
    async def remove(self, job_id: str) -> bool:
        """Delete a waiting or delayed job. False for any other state."""

    @abstractmethod
    async def pause(self, queue_name: str) -> None:
        """Stop activating jobs of the queue. Active jobs run to completion."""

    @abstractmethod
    async def resume(self, queue_name: str) -> None:
        """Resume activating jobs of the queue."""

    @abstractmethod
    async def is_paused(self, queue_name: str) -> bool:
        """Whether the queue is paused."""

    @abstractmethod
    async def close(self) -> None:
        """Stop workers and release connections."""

    # -- attempt bookkeeping --------------------------------------------------

    @abstractmethod
    async def _mark_completed(self, job: Job) -> None:
        """Persist a completed job and apply retention."""

    @abstractmethod
    async def _mark_retry(self, job: Job, delay: float) -> None:
        """Persist a job that will be attempted again after delay seconds."""

    @abstractmethod
    async def _mark_failed(self, job: Job) -> None:
        """Persist a job that ran out of attempts and apply retention."""

    @abstractmethod
    async def _save_progress(self, job: Job) -> None:
        """Persist a progress update."""

    async def _run_job(self, job: Job, handler: Handler) -> None:
        """Run one attempt of an already activated job.

        Never raises for handler errors; they are recorded on the job.
        """

        async def on_progress(percent: int) -> None:
            job.progress = percent
            await self._save_progress(job)

        handle = JobHandle(job, on_progress)

        try:
            result = await handler(handle)
        except Exception as e:
            if isinstance(e, JobProcessingError):
                error = JobError(str(e), e.stack)
            else:
                error = JobError(str(e) or type(e).__name__, traceback.format_exc())
            await self._handle_failure(job, error)
            return

        job.result = result
        job.progress = 100
        job.error = None
        job.finished_at = utc_now()
        await self._mark_completed(job)

        logger.info(
            f"Job {job.id} in queue {job.queue_name} completed",
            extra={"attempts": job.attempts_made, "duration": job.duration_seconds},
        )
        self._record(job.queue_name, "completed", job.duration_seconds)

    async def _handle_failure(self, job: Job, error: JobError) -> None:
        job.error = error

        if job.attempts_made < job.options.max_attempts:
            delay = job.options.retry_delay(job.attempts_made)
            await self._mark_retry(job, delay)
            logger.warning(
                f"Job {job.id} in queue {job.queue_name} failed, retrying in {delay:.1f}s",
                extra={
                    "error": error.message,
                    "attempts": job.attempts_made,
                    "max_attempts": job.options.max_attempts,
                },
            )
            self._record(job.queue_name, "retried")
            return

        job.finished_at = utc_now()
        await self._mark_failed(job)
        logger.error(
            f"Job {job.id} in queue {job.queue_name} failed",
            extra={"error": error.message, "attempts": job.attempts_made},
        )
        self._record(job.queue_name, "failed", job.duration_seconds)

    def _record(self, queue_name: str, outcome: str, duration: float | None = None) -> None:
        if self.metrics is not None:
            self.metrics.current.record_job_outcome(queue_name, outcome, duration)
