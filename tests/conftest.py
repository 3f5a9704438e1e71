"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio

from research_core.config.settings import Settings
from research_core.jobs import JobQueue, MemoryQueueBackend
from research_core.observability.metrics import MetricsCollector


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        """Drop-in for asyncio.sleep that advances the clock instead of waiting."""
        self.now += seconds


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll an async or sync predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wait_until():
    """Async helper: await wait_until(lambda: ...)."""
    return _wait_until


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's .env, with fast job retries."""
    return Settings(
        _env_file=None,
        redis_url=None,
        use_memory_queue=True,
        job_backoff_delay=0.0,
        retry_delay=0.0,
        monitor_interval=3600.0,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest_asyncio.fixture
async def memory_queue(metrics):
    """JobQueue on the in-memory backend with instant retries."""
    from research_core.jobs import JobOptions

    queue = JobQueue(
        MemoryQueueBackend(metrics=metrics),
        default_options=JobOptions(backoff_delay=0.0),
        metrics=metrics,
    )
    yield queue
    await queue.close()
