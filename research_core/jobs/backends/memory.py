"""In-process queue backend.

Used when no Redis URL is configured. Jobs live in memory and are lost when
the process exits.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from typing import Any

from research_core.observability.logger import get_logger

from ..models import Job, JobCounts, JobOptions, JobStatus, utc_now
from .base import Handler, QueueBackend

logger = get_logger(__name__)


@dataclass
class _MemoryQueue:
    """State of one named queue."""

    name: str
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)
    heap: list[tuple[int, int, str]] = field(default_factory=list)  # (-priority, seq, id)
    job_ids: set[str] = field(default_factory=set)
    completed: deque[str] = field(default_factory=deque)
    failed: deque[str] = field(default_factory=deque)
    paused: bool = False
    workers: list[asyncio.Task] = field(default_factory=list)


class MemoryQueueBackend(QueueBackend):
    """Priority queues with asyncio worker tasks.

    Within a queue, higher priority is served first and equal priorities are
    FIFO. `process(..., concurrency=C)` starts C workers, so at most C jobs
    of that queue are active at once.
    """

    name = "memory"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._queues: dict[str, _MemoryQueue] = {}
        self._jobs: dict[str, Job] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._seq = itertools.count()
        self._closed = False

    def _queue(self, name: str) -> _MemoryQueue:
        queue = self._queues.get(name)
        if queue is None:
            queue = _MemoryQueue(name)
            self._queues[name] = queue
        return queue

    async def add(self, queue_name: str, payload: dict[str, Any], options: JobOptions) -> Job:
        if self._closed:
            raise RuntimeError("Queue backend is closed")

        queue = self._queue(queue_name)
        job = Job(id=uuid.uuid4().hex, queue_name=queue_name, payload=payload, options=options)
        self._jobs[job.id] = job
        queue.job_ids.add(job.id)

        if options.delay > 0:
            self._schedule(job, options.delay)
        else:
            await self._push_waiting(queue, job)

        logger.debug(
            f"Added job {job.id} to queue {queue_name}",
            extra={"status": job.status.value, "priority": options.priority},
        )
        return replace(job)

    async def find(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return replace(job) if job is not None else None

    async def process(self, queue_name: str, handler: Handler, concurrency: int) -> None:
        queue = self._queue(queue_name)
        for _ in range(concurrency):
            task = asyncio.create_task(
                self._worker(queue, handler),
                name=f"{queue_name}-worker-{len(queue.workers)}",
            )
            queue.workers.append(task)

    async def counts(self, queue_name: str) -> JobCounts:
        queue = self._queues.get(queue_name)
        if queue is None:
            return JobCounts()

        by_status = Counter(self._jobs[job_id].status for job_id in queue.job_ids)
        return JobCounts(
            waiting=by_status[JobStatus.WAITING],
            active=by_status[JobStatus.ACTIVE],
            completed=by_status[JobStatus.COMPLETED],
            failed=by_status[JobStatus.FAILED],
            delayed=by_status[JobStatus.DELAYED],
        )

    async def remove(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or not job.status.is_cancellable:
            return False

        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

        if job.status == JobStatus.WAITING:
            queue = self._queue(job.queue_name)
            queue.heap[:] = [entry for entry in queue.heap if entry[2] != job_id]
            heapq.heapify(queue.heap)

        self._forget(job)
        return True

    async def pause(self, queue_name: str) -> None:
        self._queue(queue_name).paused = True

    async def resume(self, queue_name: str) -> None:
        queue = self._queue(queue_name)
        queue.paused = False
        async with queue.condition:
            queue.condition.notify_all()

    async def is_paused(self, queue_name: str) -> bool:
        queue = self._queues.get(queue_name)
        return queue.paused if queue is not None else False

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._timers.values())
        for queue in self._queues.values():
            tasks.extend(queue.workers)
            queue.workers.clear()
        self._timers.clear()

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- internals ------------------------------------------------------------

    async def _push_waiting(self, queue: _MemoryQueue, job: Job) -> None:
        job.status = JobStatus.WAITING
        heapq.heappush(queue.heap, (-job.options.priority, next(self._seq), job.id))
        async with queue.condition:
            queue.condition.notify()

    def _schedule(self, job: Job, delay: float) -> None:
        job.status = JobStatus.DELAYED
        self._timers[job.id] = asyncio.create_task(self._promote_after(job.id, delay))

    async def _promote_after(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.DELAYED:
            return
        await self._push_waiting(self._queue(job.queue_name), job)

    async def _claim(self, queue: _MemoryQueue) -> Job:
        async with queue.condition:
            while True:
                await queue.condition.wait_for(lambda: not queue.paused and bool(queue.heap))
                _, _, job_id = heapq.heappop(queue.heap)
                job = self._jobs.get(job_id)
                if job is not None and job.status == JobStatus.WAITING:
                    break

        job.status = JobStatus.ACTIVE
        job.attempts_made += 1
        job.started_at = utc_now()
        job.finished_at = None
        return job

    async def _worker(self, queue: _MemoryQueue, handler: Handler) -> None:
        while True:
            job = await self._claim(queue)
            await self._run_job(job, handler)

    def _forget(self, job: Job) -> None:
        self._jobs.pop(job.id, None)
        queue = self._queues.get(job.queue_name)
        if queue is not None:
            queue.job_ids.discard(job.id)

    def _retain(self, history: deque[str], job_id: str, keep: int) -> None:
        history.append(job_id)
        while len(history) > keep:
            stale = self._jobs.get(history.popleft())
            if stale is not None:
                self._forget(stale)

    async def _mark_completed(self, job: Job) -> None:
        job.status = JobStatus.COMPLETED
        self._retain(self._queue(job.queue_name).completed, job.id, self.remove_on_complete)

    async def _mark_retry(self, job: Job, delay: float) -> None:
        if delay > 0:
            self._schedule(job, delay)
        else:
            await self._push_waiting(self._queue(job.queue_name), job)

    async def _mark_failed(self, job: Job) -> None:
        job.status = JobStatus.FAILED
        self._retain(self._queue(job.queue_name).failed, job.id, self.remove_on_fail)

    async def _save_progress(self, job: Job) -> None:
        # Jobs are stored by reference
        return None
