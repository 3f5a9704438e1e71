"""Durable queue backend on Redis.

Key layout (prefix `p`, queue `q`):
    p:job:{id}           JSON job record
    p:q:{q}:waiting      ZSET, score orders by priority then arrival
    p:q:{q}:delayed      ZSET, score is the ready time in epoch milliseconds
    p:q:{q}:active       SET of job ids
    p:q:{q}:completed    LIST of job ids, newest first
    p:q:{q}:failed       LIST of job ids, newest first
    p:q:{q}:paused       flag shared by every process
    p:q:{q}:seq          arrival counter
    p:queues             SET of queue names

Workers claim with ZPOPMIN and promote delayed jobs with ZREM, so several
processes can share a queue without double-processing a job.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Any

import redis.asyncio as redis

from research_core.config.constants import (
    DEFAULT_QUEUE_PREFIX,
    MAX_JOB_PRIORITY,
    REDIS_POLL_INTERVAL,
)
from research_core.observability.logger import get_logger

from ..models import Job, JobCounts, JobOptions, JobStatus, utc_now
from .base import Handler, QueueBackend

logger = get_logger(__name__)

# Arrival sequence numbers stay below this, keeping scores exact as floats
_PRIORITY_SPAN = 1_000_000_000_000


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisQueueBackend(QueueBackend):
    """Redis-backed queues with polling workers.

    Usage:
        backend = RedisQueueBackend.from_url("redis://localhost:6379/0")
        job = await backend.add("research", {"query": "..."}, JobOptions())
    """

    name = "redis"

    def __init__(
        self,
        client: redis.Redis,
        *,
        prefix: str = DEFAULT_QUEUE_PREFIX,
        poll_interval: float = REDIS_POLL_INTERVAL,
        owns_client: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.redis = client
        self.prefix = prefix
        self.poll_interval = poll_interval
        self._owns_client = owns_client
        self._workers: list[asyncio.Task] = []
        self._closed = False

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisQueueBackend:
        """Create a backend with its own connection pool."""
        client = redis.Redis.from_url(url, decode_responses=True)
        return cls(client, owns_client=True, **kwargs)

    # -- keys -----------------------------------------------------------------

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _key(self, queue_name: str, part: str) -> str:
        return f"{self.prefix}:q:{queue_name}:{part}"

    # -- records --------------------------------------------------------------

    async def _load(self, job_id: str) -> Job | None:
        raw = await self.redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return Job.from_dict(json.loads(raw))

    async def _save(self, job: Job) -> None:
        await self.redis.set(self._job_key(job.id), json.dumps(job.to_dict(), default=str))

    async def _push_waiting(self, job: Job) -> None:
        job.status = JobStatus.WAITING
        await self._save(job)
        seq = await self.redis.incr(self._key(job.queue_name, "seq"))
        score = (MAX_JOB_PRIORITY - job.options.priority) * _PRIORITY_SPAN + seq % _PRIORITY_SPAN
        await self.redis.zadd(self._key(job.queue_name, "waiting"), {job.id: score})

    async def _push_delayed(self, job: Job, delay: float) -> None:
        job.status = JobStatus.DELAYED
        await self._save(job)
        ready_at = _now_ms() + int(delay * 1000)
        await self.redis.zadd(self._key(job.queue_name, "delayed"), {job.id: ready_at})

    # -- QueueBackend ---------------------------------------------------------

    async def add(self, queue_name: str, payload: dict[str, Any], options: JobOptions) -> Job:
        if self._closed:
            raise RuntimeError("Queue backend is closed")

        job = Job(id=uuid.uuid4().hex, queue_name=queue_name, payload=payload, options=options)
        await self.redis.sadd(f"{self.prefix}:queues", queue_name)

        if options.delay > 0:
            await self._push_delayed(job, options.delay)
        else:
            await self._push_waiting(job)

        logger.debug(
            f"Added job {job.id} to queue {queue_name}",
            extra={"status": job.status.value, "priority": options.priority},
        )
        return job

    async def find(self, job_id: str) -> Job | None:
        return await self._load(job_id)

    async def process(self, queue_name: str, handler: Handler, concurrency: int) -> None:
        await self.redis.sadd(f"{self.prefix}:queues", queue_name)
        for _ in range(concurrency):
            task = asyncio.create_task(
                self._worker(queue_name, handler),
                name=f"{queue_name}-worker-{len(self._workers)}",
            )
            self._workers.append(task)

    async def counts(self, queue_name: str) -> JobCounts:
        return JobCounts(
            waiting=await self.redis.zcard(self._key(queue_name, "waiting")),
            active=await self.redis.scard(self._key(queue_name, "active")),
            completed=await self.redis.llen(self._key(queue_name, "completed")),
            failed=await self.redis.llen(self._key(queue_name, "failed")),
            delayed=await self.redis.zcard(self._key(queue_name, "delayed")),
        )

    async def remove(self, job_id: str) -> bool:
        job = await self._load(job_id)
        if job is None or not job.status.is_cancellable:
            return False

        part = "waiting" if job.status == JobStatus.WAITING else "delayed"
        # ZREM loses to a worker that claimed the job first
        removed = await self.redis.zrem(self._key(job.queue_name, part), job_id)
        if not removed:
            return False

        await self.redis.delete(self._job_key(job_id))
        return True

    async def pause(self, queue_name: str) -> None:
        await self.redis.set(self._key(queue_name, "paused"), "1")

    async def resume(self, queue_name: str) -> None:
        await self.redis.delete(self._key(queue_name, "paused"))

    async def is_paused(self, queue_name: str) -> bool:
        return bool(await self.redis.exists(self._key(queue_name, "paused")))

    async def queue_names(self) -> list[str]:
        """Queues ever used by any process sharing this prefix."""
        return sorted(await self.redis.smembers(f"{self.prefix}:queues"))

    async def close(self) -> None:
        self._closed = True
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        if self._owns_client:
            await self.redis.aclose()

    # -- workers --------------------------------------------------------------

    async def _promote_due(self, queue_name: str) -> None:
        delayed_key = self._key(queue_name, "delayed")
        due = await self.redis.zrangebyscore(delayed_key, 0, _now_ms())
        for job_id in due:
            # Only the process whose ZREM succeeds promotes the job
            if not await self.redis.zrem(delayed_key, job_id):
                continue
            job = await self._load(job_id)
            if job is not None:
                await self._push_waiting(job)

    async def _claim(self, queue_name: str) -> Job | None:
        if await self.is_paused(queue_name):
            return None

        await self._promote_due(queue_name)

        popped = await self.redis.zpopmin(self._key(queue_name, "waiting"))
        if not popped:
            return None

        job_id, _ = popped[0]
        job = await self._load(job_id)
        if job is None:
            return None

        job.status = JobStatus.ACTIVE
        job.attempts_made += 1
        job.started_at = utc_now()
        job.finished_at = None
        await self._save(job)
        await self.redis.sadd(self._key(queue_name, "active"), job.id)
        return job

    async def _worker(self, queue_name: str, handler: Handler) -> None:
        while True:
            try:
                job = await self._claim(queue_name)
            except redis.RedisError as e:
                logger.error(
                    f"Queue {queue_name} error: {e}",
                    extra={"queue": queue_name, "error_type": type(e).__name__},
                )
                job = None

            if job is None:
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                await self._run_job(job, handler)
            except redis.RedisError as e:
                # The job stays in the active set; the worker moves on
                logger.error(
                    f"Queue {queue_name} lost the outcome of job {job.id}: {e}",
                    extra={"queue": queue_name, "job_id": job.id, "error_type": type(e).__name__},
                )
                await asyncio.sleep(self.poll_interval)

    async def _retain(self, list_key: str, job_id: str, keep: int) -> None:
        await self.redis.lpush(list_key, job_id)
        stale = await self.redis.lrange(list_key, keep, -1)
        if not stale:
            return

        if keep > 0:
            await self.redis.ltrim(list_key, 0, keep - 1)
        else:
            await self.redis.delete(list_key)
        await self.redis.delete(*[self._job_key(stale_id) for stale_id in stale])

    async def _mark_completed(self, job: Job) -> None:
        job.status = JobStatus.COMPLETED
        await self._save(job)
        await self.redis.srem(self._key(job.queue_name, "active"), job.id)
        await self._retain(self._key(job.queue_name, "completed"), job.id, self.remove_on_complete)

    async def _mark_retry(self, job: Job, delay: float) -> None:
        await self.redis.srem(self._key(job.queue_name, "active"), job.id)
        if delay > 0:
            await self._push_delayed(job, delay)
        else:
            await self._push_waiting(job)

    async def _mark_failed(self, job: Job) -> None:
        job.status = JobStatus.FAILED
        await self._save(job)
        await self.redis.srem(self._key(job.queue_name, "active"), job.id)
        await self._retain(self._key(job.queue_name, "failed"), job.id, self.remove_on_fail)

    async def _save_progress(self, job: Job) -> None:
        await self._save(job)
