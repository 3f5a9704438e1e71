"""Queue backends: durable Redis and the in-process fallback."""

from .base import QueueBackend
from .memory import MemoryQueueBackend
from .redis import RedisQueueBackend

__all__ = ["QueueBackend", "MemoryQueueBackend", "RedisQueueBackend"]
