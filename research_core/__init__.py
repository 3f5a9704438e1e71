"""Resilience and job-processing core for an AI research backend.

- resilience: circuit breakers, backoff, sliding-window rate limits
- clients: retrying aiohttp client
- jobs: job queue with Redis and in-memory backends
- runtime: builds everything from Settings
"""

__version__ = "0.1.0"
