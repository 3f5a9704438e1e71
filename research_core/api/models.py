"""Request and response models for the HTTP API."""

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field

from research_core.config.constants import MAX_JOB_PRIORITY, MIN_JOB_PRIORITY
from research_core.jobs.models import Job, JobStatus

# Queue names end up in Redis keys
QUEUE_NAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
QUEUE_NAME_MAX_LENGTH = 64


class EnqueueRequest(BaseModel):
    """Enqueue job request. Unset options use the server defaults."""

    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Annotated[int | None, Field(ge=MIN_JOB_PRIORITY, le=MAX_JOB_PRIORITY)] = None
    delay: Annotated[float | None, Field(ge=0)] = None
    max_attempts: Annotated[int | None, Field(ge=1, le=20)] = None
    backoff_delay: Annotated[float | None, Field(ge=0)] = None

    def job_options(self) -> dict[str, Any]:
        return self.model_dump(exclude={"payload"}, exclude_none=True)


class EnqueueResponse(BaseModel):
    """Enqueue job response."""

    job_id: str
    queue: str


class JobErrorResponse(BaseModel):
    message: str
    stack: str | None = None


class JobResponse(BaseModel):
    """Job status response."""

    id: str
    queue_name: str
    status: JobStatus
    progress: int = 0
    attempts_made: int = 0
    max_attempts: int | None = None
    priority: int | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: Any = None
    error: JobErrorResponse | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        found = job.status != JobStatus.NOT_FOUND
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            status=job.status,
            progress=job.progress,
            attempts_made=job.attempts_made,
            max_attempts=job.options.max_attempts if found else None,
            priority=job.options.priority if found else None,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            result=job.result,
            error=JobErrorResponse(**job.error.to_dict()) if job.error else None,
        )


class JobCountsResponse(BaseModel):
    """Job counts for one queue."""

    queue: str
    paused: bool
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int


class QueueActionResponse(BaseModel):
    """Result of pause, resume or cancel."""

    success: bool
    message: str
