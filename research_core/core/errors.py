"""Error hierarchy for research core.

All resilience and job errors inherit from ResearchCoreError.
Use `is_retryable` property to determine if an error can be retried.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import aiohttp


class ResearchCoreError(Exception):
    """Base error for all research core errors.

    Attributes:
        message: Error description
        service: Related service or provider name (if applicable)
    """

    def __init__(self, message: str, *, service: str | None = None) -> None:
        self.service = service
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error can be retried."""
        return False

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": str(self),
            "service": self.service,
            "is_retryable": self.is_retryable,
        }

    def log_extra(self) -> dict[str, Any]:
        """to_dict() with keys that are safe to pass as logging `extra`."""
        d = self.to_dict()
        d["error"] = d.pop("message")
        return d


class CircuitOpenError(ResearchCoreError):
    """Circuit breaker is open - failing fast.

    No network attempt was made. Wait until `reset_at` before trying again.
    """

    def __init__(
        self,
        message: str = "Circuit breaker is open",
        *,
        reset_at: datetime | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reset_at = reset_at

    @property
    def is_retryable(self) -> bool:
        return False  # Not immediately retryable

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["reset_at"] = self.reset_at.isoformat() if self.reset_at else None
        return d


class RetryableTransportError(ResearchCoreError):
    """Timeout, network failure, 5xx or 429 response.

    Retried within the client's budget. `status` is None for transport
    failures where no response arrived.
    """

    def __init__(
        self,
        message: str = "Transient transport error",
        *,
        status: int | None = None,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status = status
        self.retry_after = retry_after

    @property
    def is_retryable(self) -> bool:
        return True

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["status"] = self.status
        d["retry_after"] = self.retry_after
        return d


class NonRetryableError(ResearchCoreError):
    """Client error response (4xx other than 408/429).

    This is NOT retryable - repeating the same request gets the same answer.
    """

    def __init__(
        self,
        message: str = "Request rejected",
        *,
        status: int | None = None,
        body: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status = status
        self.body = body

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["status"] = self.status
        return d


class ExhaustedRetriesError(ResearchCoreError):
    """Retry budget spent. Wraps the last underlying error."""

    def __init__(
        self,
        last_error: Exception,
        *,
        attempts: int,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}",
            **kwargs,
        )
        self.last_error = last_error
        self.attempts = attempts

    @property
    def status(self) -> int | None:
        """Status of the last failed attempt, if a response arrived."""
        return getattr(self.last_error, "status", None)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["attempts"] = self.attempts
        d["last_error"] = str(self.last_error)
        d["status"] = self.status
        return d


class JobProcessingError(ResearchCoreError):
    """A job processor raised.

    Recorded on the job, never re-raised to unrelated callers.
    """

    def __init__(
        self,
        message: str = "Job processing failed",
        *,
        stack: str | None = None,
        job_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.stack = stack
        self.job_id = job_id

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["job_id"] = self.job_id
        return d


class ConfigurationError(ResearchCoreError):
    """Invalid or missing configuration."""


def classify_exception(error: Exception, service: str | None = None) -> ResearchCoreError:
    """Classify a raw exception into a ResearchCoreError.

    Args:
        error: The exception to classify
        service: Service name for context

    Returns:
        Appropriate ResearchCoreError subclass
    """
    if isinstance(error, ResearchCoreError):
        return error

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return RetryableTransportError(f"Request timed out: {error}", service=service)

    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in (408, 429) or error.status >= 500:
            return RetryableTransportError(str(error), status=error.status, service=service)
        return NonRetryableError(str(error), status=error.status, service=service)

    if isinstance(error, (aiohttp.ClientError, ConnectionError)):
        return RetryableTransportError(f"Network error: {error}", service=service)

    error_str = str(error).lower()

    # Rate limit indicators
    rate_limit_indicators = ["429", "rate limit", "too many requests", "throttl"]
    if any(indicator in error_str for indicator in rate_limit_indicators):
        return RetryableTransportError(str(error), status=429, service=service)

    # Network indicators
    network_indicators = [
        "connection",
        "network",
        "unreachable",
        "refused",
        "reset",
        "broken pipe",
    ]
    if any(indicator in error_str for indicator in network_indicators):
        return RetryableTransportError(str(error), service=service)

    # Default to base ResearchCoreError
    return ResearchCoreError(str(error), service=service)
