"""Tests for research_core/jobs/queue.py on the in-memory backend."""

import asyncio

import pytest

from research_core.core.errors import JobProcessingError
from research_core.jobs import JobOptions, JobQueue, JobStatus, MemoryQueueBackend
from research_core.jobs.models import JobCounts
from research_core.jobs.queue import ThrottlePolicy
from research_core.resilience.rate_limiter import ProviderLimits, RateLimiter


class TestEnqueue:
    """Tests for enqueue_job and get_job_status."""

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, memory_queue):
        """Every enqueue returns a fresh id."""
        ids = {await memory_queue.enqueue_job("research", {"n": n}) for n in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    async def test_new_job_is_waiting(self, memory_queue):
        """A job without delay starts waiting with its payload."""
        job_id = await memory_queue.enqueue_job("research", {"query": "llm pricing"})

        job = await memory_queue.get_job_status("research", job_id)

        assert job.status == JobStatus.WAITING
        assert job.payload == {"query": "llm pricing"}
        assert job.attempts_made == 0
        assert job.created_at is not None

    @pytest.mark.asyncio
    async def test_delayed_job(self, memory_queue):
        """A positive delay starts the job delayed."""
        job_id = await memory_queue.enqueue_job("research", {}, {"delay": 30})

        job = await memory_queue.get_job_status("research", job_id)

        assert job.status == JobStatus.DELAYED
        assert (await memory_queue.get_job_counts("research")).delayed == 1

    @pytest.mark.asyncio
    async def test_unknown_job_not_found(self, memory_queue):
        """Unknown ids report not_found instead of raising."""
        job = await memory_queue.get_job_status("research", "missing")

        assert job.status == JobStatus.NOT_FOUND
        assert job.id == "missing"

    @pytest.mark.asyncio
    async def test_job_in_other_queue_not_found(self, memory_queue):
        """Lookups are scoped to the queue."""
        job_id = await memory_queue.enqueue_job("research", {})

        job = await memory_queue.get_job_status("deep-research", job_id)

        assert job.status == JobStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_payload_must_be_json(self, memory_queue):
        """Non-serialisable payloads are rejected."""
        with pytest.raises(ValueError, match="JSON"):
            await memory_queue.enqueue_job("research", {"when": object()})

    @pytest.mark.asyncio
    async def test_invalid_options(self, memory_queue):
        """Out-of-range options are rejected."""
        with pytest.raises(ValueError):
            await memory_queue.enqueue_job("research", {}, {"priority": 101})
        with pytest.raises(ValueError):
            await memory_queue.enqueue_job("research", {}, JobOptions(max_attempts=0))

    @pytest.mark.asyncio
    async def test_returned_job_is_a_copy(self, memory_queue):
        """Mutating a returned job does not change the stored record."""
        job_id = await memory_queue.enqueue_job("research", {})

        job = await memory_queue.get_job_status("research", job_id)
        job.status = JobStatus.FAILED

        assert (await memory_queue.get_job_status("research", job_id)).status == JobStatus.WAITING


class TestThrottle:
    """Tests for enqueue-time delay injection."""

    def test_policy(self):
        """No delay at or below the threshold, then step per waiting job."""
        policy = ThrottlePolicy(backlog_threshold=0, step_delay=5.0, min_delay=5.0)

        assert policy.delay_for(JobCounts()) == 0.0
        assert policy.delay_for(JobCounts(waiting=5)) == 30.0
        assert policy.delay_for(JobCounts(active=1)) == 5.0

    @pytest.mark.asyncio
    async def test_backlog_delays_rate_limited_job(self, memory_queue, metrics):
        """With 5 waiting, a rate-limited job is delayed; with none it is not."""
        empty_id = await memory_queue.enqueue_job("deep-research", {"should_rate_limit": True})
        assert (await memory_queue.get_job_status("deep-research", empty_id)).status == (
            JobStatus.WAITING
        )

        for n in range(4):
            await memory_queue.enqueue_job("deep-research", {"n": n})

        job_id = await memory_queue.enqueue_job("deep-research", {"should_rate_limit": True})

        job = await memory_queue.get_job_status("deep-research", job_id)
        assert job.status == JobStatus.DELAYED
        assert job.options.delay == 30.0
        assert metrics.current.jobs_throttled == {"deep-research": 1}

    @pytest.mark.asyncio
    async def test_unflagged_job_never_throttled(self, memory_queue):
        """Jobs without should_rate_limit ignore the backlog."""
        for n in range(5):
            await memory_queue.enqueue_job("deep-research", {"n": n})

        job_id = await memory_queue.enqueue_job("deep-research", {"n": 5})

        assert (await memory_queue.get_job_status("deep-research", job_id)).options.delay == 0

    @pytest.mark.asyncio
    async def test_caller_delay_wins_when_larger(self, memory_queue):
        """The larger of caller and injected delay applies."""
        await memory_queue.enqueue_job("deep-research", {})

        job_id = await memory_queue.enqueue_job(
            "deep-research", {"should_rate_limit": True}, {"delay": 120}
        )

        assert (await memory_queue.get_job_status("deep-research", job_id)).options.delay == 120

    @pytest.mark.asyncio
    async def test_provider_window_delay(self, clock):
        """A saturated expensive window on the payload's provider delays the job."""
        limiter = RateLimiter(
            {"perplexity": ProviderLimits(requests_per_minute=20, expensive_per_window=1)},
            clock=clock,
        )
        limiter.record_request("perplexity", expensive=True)
        queue = JobQueue(MemoryQueueBackend(), rate_limiter=limiter)

        try:
            job_id = await queue.enqueue_job(
                "deep-research", {"should_rate_limit": True, "provider": "perplexity"}
            )
            job = await queue.get_job_status("deep-research", job_id)
        finally:
            await queue.close()

        assert job.options.delay == pytest.approx(3600.0)


class TestProcessing:
    """Tests for register_processor and the attempt lifecycle."""

    @pytest.mark.asyncio
    async def test_completes_with_result(self, memory_queue, wait_until, metrics):
        """A successful processor completes the job with its result."""

        async def processor(job):
            return {"answer": job.payload["query"].upper()}

        await memory_queue.register_processor("research", processor)
        job_id = await memory_queue.enqueue_job("research", {"query": "ok"})

        async def done():
            return (await memory_queue.get_job_status("research", job_id)).status.is_finished

        await wait_until(done)
        job = await memory_queue.get_job_status("research", job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.result == {"answer": "OK"}
        assert job.progress == 100
        assert job.attempts_made == 1
        assert job.duration_seconds is not None
        assert metrics.current.job_outcomes == {"research:completed": 1}

    @pytest.mark.asyncio
    async def test_always_failing_job_fails_after_attempts(self, memory_queue, wait_until):
        """A processor that always raises fails the job after max_attempts."""
        calls = []

        async def processor(job):
            calls.append(job.attempts_made)
            raise RuntimeError("provider returned garbage")

        await memory_queue.register_processor("research", processor)
        job_id = await memory_queue.enqueue_job("research", {}, {"max_attempts": 3})

        async def failed():
            job = await memory_queue.get_job_status("research", job_id)
            return job.status == JobStatus.FAILED

        await wait_until(failed)
        job = await memory_queue.get_job_status("research", job_id)

        assert job.attempts_made == 3
        assert calls == [1, 2, 3]
        assert job.error.message == "provider returned garbage"
        assert "RuntimeError" in job.error.stack

    @pytest.mark.asyncio
    async def test_retry_then_success(self, memory_queue, wait_until):
        """A job that fails once completes on its second attempt."""

        async def processor(job):
            if job.attempts_made == 1:
                raise RuntimeError("flaky")
            return "ok"

        await memory_queue.register_processor("research", processor)
        job_id = await memory_queue.enqueue_job("research", {})

        async def done():
            return (await memory_queue.get_job_status("research", job_id)).status.is_finished

        await wait_until(done)
        job = await memory_queue.get_job_status("research", job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.attempts_made == 2
        assert job.error is None

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self, memory_queue, wait_until):
        """No more than `concurrency` jobs of a queue run at once."""
        running = 0
        peak = 0
        release = asyncio.Event()

        async def processor(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1

        await memory_queue.register_processor("research", processor, concurrency=2)
        for n in range(5):
            await memory_queue.enqueue_job("research", {"n": n})

        async def two_active():
            return (await memory_queue.get_job_counts("research")).active == 2

        await wait_until(two_active)
        await asyncio.sleep(0.05)
        assert peak == 2
        assert (await memory_queue.get_job_counts("research")).waiting == 3

        release.set()

        async def all_done():
            return (await memory_queue.get_job_counts("research")).completed == 5

        await wait_until(all_done)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_priority_order(self, memory_queue, wait_until):
        """Higher priority runs first; equal priority is FIFO."""
        order = []

        async def processor(job):
            order.append(job.payload["name"])

        await memory_queue.enqueue_job("research", {"name": "low"}, {"priority": 1})
        await memory_queue.enqueue_job("research", {"name": "first"}, {"priority": 5})
        await memory_queue.enqueue_job("research", {"name": "second"}, {"priority": 5})
        await memory_queue.enqueue_job("research", {"name": "urgent"}, {"priority": 90})

        await memory_queue.register_processor("research", processor)
        await wait_until(lambda: len(order) == 4)

        assert order == ["urgent", "first", "second", "low"]

    @pytest.mark.asyncio
    async def test_progress_reporting(self, memory_queue, wait_until):
        """Progress reported by the processor is visible while it runs."""
        halfway = asyncio.Event()
        release = asyncio.Event()

        async def processor(job):
            await job.report_progress(150)
            await job.report_progress(42)
            halfway.set()
            await release.wait()

        await memory_queue.register_processor("research", processor)
        job_id = await memory_queue.enqueue_job("research", {})
        await asyncio.wait_for(halfway.wait(), timeout=2)

        job = await memory_queue.get_job_status("research", job_id)
        assert job.status == JobStatus.ACTIVE
        assert job.progress == 42

        release.set()

    @pytest.mark.asyncio
    async def test_duplicate_processor_rejected(self, memory_queue):
        """A queue has at most one processor per JobQueue."""

        async def processor(job):
            return None

        await memory_queue.register_processor("research", processor)
        with pytest.raises(ValueError):
            await memory_queue.register_processor("research", processor)

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self, memory_queue):
        """Concurrency below one is rejected."""

        async def processor(job):
            return None

        with pytest.raises(ValueError):
            await memory_queue.register_processor("research", processor, concurrency=0)

    @pytest.mark.asyncio
    async def test_wrapper_raises_job_processing_error(self, memory_queue):
        """The processor wrapper re-raises as JobProcessingError with a stack."""

        async def processor(job):
            raise KeyError("query")

        handler = memory_queue._wrap("research", processor)
        fake_job = type("FakeHandle", (), {"id": "abc", "attempts_made": 1})()

        with pytest.raises(JobProcessingError) as exc_info:
            await handler(fake_job)

        assert exc_info.value.job_id == "abc"
        assert "KeyError" in exc_info.value.stack


class TestControl:
    """Tests for pause, resume and cancel."""

    @pytest.mark.asyncio
    async def test_pause_holds_jobs(self, memory_queue, wait_until):
        """A paused queue keeps jobs waiting until resumed."""
        processed = []

        async def processor(job):
            processed.append(job.id)

        await memory_queue.pause_queue("research")
        await memory_queue.register_processor("research", processor)
        job_id = await memory_queue.enqueue_job("research", {})

        await asyncio.sleep(0.05)
        assert processed == []
        assert await memory_queue.is_paused("research") is True
        assert (await memory_queue.get_job_status("research", job_id)).status == JobStatus.WAITING

        await memory_queue.resume_queue("research")
        await wait_until(lambda: processed == [job_id])
        assert await memory_queue.is_paused("research") is False

    @pytest.mark.asyncio
    async def test_cancel_waiting_job(self, memory_queue):
        """Cancelled jobs disappear and are never processed."""
        job_id = await memory_queue.enqueue_job("research", {})

        assert await memory_queue.cancel_job(job_id) is True
        assert (await memory_queue.get_job_status("research", job_id)).status == (
            JobStatus.NOT_FOUND
        )
        assert (await memory_queue.get_job_counts("research")).waiting == 0

    @pytest.mark.asyncio
    async def test_cancel_drops_heap_entry(self, memory_queue):
        """Cancelling waiting jobs leaves no entries behind in the queue heap."""
        kept = await memory_queue.enqueue_job("research", {})
        for _ in range(5):
            job_id = await memory_queue.enqueue_job("research", {})
            await memory_queue.cancel_job(job_id)

        heap = memory_queue.backend._queues["research"].heap
        assert [entry[2] for entry in heap] == [kept]

    @pytest.mark.asyncio
    async def test_cancel_delayed_job(self, memory_queue):
        """Delayed jobs can be cancelled."""
        job_id = await memory_queue.enqueue_job("research", {}, {"delay": 60})
        assert await memory_queue.cancel_job(job_id) is True

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished(self, memory_queue, wait_until):
        """Unknown and finished jobs cannot be cancelled."""

        async def processor(job):
            return None

        await memory_queue.register_processor("research", processor)
        job_id = await memory_queue.enqueue_job("research", {})

        async def done():
            return (await memory_queue.get_job_status("research", job_id)).status.is_finished

        await wait_until(done)

        assert await memory_queue.cancel_job(job_id) is False
        assert await memory_queue.cancel_job("missing") is False

    @pytest.mark.asyncio
    async def test_queue_names(self, memory_queue):
        """Queues are tracked in first-use order."""
        await memory_queue.enqueue_job("research", {})
        await memory_queue.pause_queue("deep-research")

        assert memory_queue.queue_names == ["research", "deep-research"]
        assert memory_queue.backend_name == "memory"
