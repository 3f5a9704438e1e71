"""Job queue API routes."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path, Request

from research_core.api.deps import get_runtime
from research_core.api.models import (
    QUEUE_NAME_MAX_LENGTH,
    QUEUE_NAME_PATTERN,
    EnqueueRequest,
    EnqueueResponse,
    JobCountsResponse,
    JobResponse,
    QueueActionResponse,
)
from research_core.api.rate_limit import RATE_LIMITS, limiter
from research_core.runtime import Runtime

router = APIRouter(tags=["jobs"])


@router.get("/queues/health")
@limiter.limit(RATE_LIMITS["default"])
async def get_queue_health(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> list[dict[str, Any]]:
    """Run one health check over every known queue."""
    report = await runtime.jobs.check_queue_health()
    return [health.to_dict() for health in report]


@router.post("/queues/{queue}/jobs", response_model=EnqueueResponse, status_code=201)
@limiter.limit(RATE_LIMITS["enqueue"])
async def enqueue_job(
    request: Request,
    body: EnqueueRequest,
    queue: str = Path(pattern=QUEUE_NAME_PATTERN, max_length=QUEUE_NAME_MAX_LENGTH),
    runtime: Runtime = Depends(get_runtime),
):
    """Enqueue a job."""
    try:
        job_id = await runtime.jobs.enqueue_job(queue, body.payload, body.job_options())
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return EnqueueResponse(job_id=job_id, queue=queue)


@router.get("/queues/{queue}/jobs/{job_id}", response_model=JobResponse)
@limiter.limit(RATE_LIMITS["default"])
async def get_job(
    request: Request,
    job_id: str,
    queue: str = Path(pattern=QUEUE_NAME_PATTERN, max_length=QUEUE_NAME_MAX_LENGTH),
    runtime: Runtime = Depends(get_runtime),
):
    """Get job status. Unknown ids report status `not_found`."""
    job = await runtime.jobs.get_job_status(queue, job_id)
    return JobResponse.from_job(job)


@router.get("/queues/{queue}/counts", response_model=JobCountsResponse)
@limiter.limit(RATE_LIMITS["default"])
async def get_counts(
    request: Request,
    queue: str = Path(pattern=QUEUE_NAME_PATTERN, max_length=QUEUE_NAME_MAX_LENGTH),
    runtime: Runtime = Depends(get_runtime),
):
    """Get job counts for a queue."""
    counts = await runtime.jobs.get_job_counts(queue)
    paused = await runtime.jobs.is_paused(queue)
    return JobCountsResponse(queue=queue, paused=paused, **counts.to_dict())


@router.post("/queues/{queue}/pause", response_model=QueueActionResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def pause_queue(
    request: Request,
    queue: str = Path(pattern=QUEUE_NAME_PATTERN, max_length=QUEUE_NAME_MAX_LENGTH),
    runtime: Runtime = Depends(get_runtime),
):
    """Stop activating jobs in a queue."""
    await runtime.jobs.pause_queue(queue)
    return QueueActionResponse(success=True, message=f"Queue {queue} paused")


@router.post("/queues/{queue}/resume", response_model=QueueActionResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def resume_queue(
    request: Request,
    queue: str = Path(pattern=QUEUE_NAME_PATTERN, max_length=QUEUE_NAME_MAX_LENGTH),
    runtime: Runtime = Depends(get_runtime),
):
    """Resume activating jobs in a queue."""
    await runtime.jobs.resume_queue(queue)
    return QueueActionResponse(success=True, message=f"Queue {queue} resumed")


@router.delete("/jobs/{job_id}", response_model=QueueActionResponse)
@limiter.limit(RATE_LIMITS["admin"])
async def cancel_job(
    request: Request,
    job_id: str,
    runtime: Runtime = Depends(get_runtime),
):
    """Cancel a waiting or delayed job."""
    if not await runtime.jobs.cancel_job(job_id):
        raise HTTPException(
            status_code=409,
            detail="Job not found or no longer cancellable",
        )
    return QueueActionResponse(success=True, message=f"Job {job_id} cancelled")
