"""Job data models shared by every queue backend."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from research_core.config.constants import (
    DEFAULT_JOB_ATTEMPTS,
    DEFAULT_JOB_BACKOFF,
    DEFAULT_JOB_PRIORITY,
    MAX_JOB_PRIORITY,
    MIN_JOB_PRIORITY,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class JobStatus(str, Enum):
    """Job lifecycle states."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"  # Status for unknown ids, never stored

    @property
    def is_finished(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_cancellable(self) -> bool:
        return self in (JobStatus.WAITING, JobStatus.DELAYED)


@dataclass
class JobOptions:
    """Per-job scheduling options.

    Attributes:
        priority: 0..100, higher is served first
        delay: Seconds before the job becomes waiting
        max_attempts: Total attempts before the job fails
        backoff_delay: Base of exponential backoff between attempts (seconds)
    """

    priority: int = DEFAULT_JOB_PRIORITY
    delay: float = 0.0
    max_attempts: int = DEFAULT_JOB_ATTEMPTS
    backoff_delay: float = DEFAULT_JOB_BACKOFF

    def __post_init__(self) -> None:
        if not MIN_JOB_PRIORITY <= self.priority <= MAX_JOB_PRIORITY:
            raise ValueError(
                f"priority must be between {MIN_JOB_PRIORITY} and {MAX_JOB_PRIORITY}"
            )
        if self.delay < 0:
            raise ValueError("delay must be non-negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_delay < 0:
            raise ValueError("backoff_delay must be non-negative")

    def retry_delay(self, attempts_made: int) -> float:
        """Backoff before the next attempt after `attempts_made` failures."""
        return self.backoff_delay * (2 ** max(0, attempts_made - 1))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobOptions:
        return cls(**data)


@dataclass
class JobError:
    """Error retained on a failed job attempt."""

    message: str
    stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "stack": self.stack}


@dataclass
class Job:
    """One unit of work and its recorded outcome.

    Only backends mutate a Job; callers receive copies.
    """

    id: str
    queue_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    options: JobOptions = field(default_factory=JobOptions)
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    attempts_made: int = 0
    created_at: datetime | None = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: Any = None
    error: JobError | None = None

    @classmethod
    def not_found(cls, job_id: str, queue_name: str = "") -> Job:
        """Placeholder returned for ids no backend knows."""
        return cls(
            id=job_id,
            queue_name=queue_name,
            status=JobStatus.NOT_FOUND,
            created_at=None,
        )

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dict."""
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "payload": self.payload,
            "options": self.options.to_dict(),
            "status": self.status.value,
            "progress": self.progress,
            "attempts_made": self.attempts_made,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        error = data.get("error")
        return cls(
            id=data["id"],
            queue_name=data["queue_name"],
            payload=data.get("payload") or {},
            options=JobOptions.from_dict(data.get("options") or {}),
            status=JobStatus(data.get("status", JobStatus.WAITING.value)),
            progress=data.get("progress", 0),
            attempts_made=data.get("attempts_made", 0),
            created_at=_parse_datetime(data.get("created_at")),
            started_at=_parse_datetime(data.get("started_at")),
            finished_at=_parse_datetime(data.get("finished_at")),
            result=data.get("result"),
            error=JobError(**error) if error else None,
        )


@dataclass
class JobCounts:
    """Number of jobs per state in one queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def finished(self) -> int:
        return self.completed + self.failed

    @property
    def failure_rate(self) -> float:
        """failed / (completed + failed), 0.0 when nothing has finished."""
        if self.finished == 0:
            return 0.0
        return self.failed / self.finished

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


ProgressCallback = Callable[[int], Awaitable[None]]


class JobHandle:
    """The view of a job passed to a processor.

    Usage:
        async def processor(job: JobHandle) -> dict:
            await job.report_progress(50)
            return {"answer": await research(job.payload["query"])}
    """

    def __init__(self, job: Job, on_progress: ProgressCallback) -> None:
        self.id = job.id
        self.queue_name = job.queue_name
        self.payload = job.payload
        self.attempts_made = job.attempts_made
        self._on_progress = on_progress

    async def report_progress(self, percent: int | float) -> None:
        """Record progress, clamped to 0..100."""
        await self._on_progress(int(min(100, max(0, percent))))

    def __repr__(self) -> str:
        return f"JobHandle(id={self.id!r}, queue={self.queue_name!r})"


Processor = Callable[[JobHandle], Awaitable[Any]]
