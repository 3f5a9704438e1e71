"""Shared error types for research core."""

from .errors import (
    CircuitOpenError,
    ConfigurationError,
    ExhaustedRetriesError,
    JobProcessingError,
    NonRetryableError,
    ResearchCoreError,
    RetryableTransportError,
    classify_exception,
)

__all__ = [
    "ResearchCoreError",
    "CircuitOpenError",
    "RetryableTransportError",
    "NonRetryableError",
    "ExhaustedRetriesError",
    "JobProcessingError",
    "ConfigurationError",
    "classify_exception",
]
