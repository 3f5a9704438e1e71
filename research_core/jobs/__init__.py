"""Background job processing.

- JobQueue: enqueue, inspect, cancel and process jobs
- MemoryQueueBackend / RedisQueueBackend: storage and workers
- QueueMonitor: periodic backlog and failure-rate checks
"""

from .backends import MemoryQueueBackend, QueueBackend, RedisQueueBackend
from .models import Job, JobCounts, JobError, JobHandle, JobOptions, JobStatus
from .monitor import QueueAlert, QueueHealth, QueueMonitor
from .queue import JobQueue, ThrottlePolicy

__all__ = [
    "Job",
    "JobCounts",
    "JobError",
    "JobHandle",
    "JobOptions",
    "JobQueue",
    "JobStatus",
    "MemoryQueueBackend",
    "QueueAlert",
    "QueueBackend",
    "QueueHealth",
    "QueueMonitor",
    "RedisQueueBackend",
    "ThrottlePolicy",
]
