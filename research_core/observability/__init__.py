"""Observability infrastructure for research core.

Provides structured logging and metrics collection.
"""

from .logger import LogContext, get_logger, log_context, setup_logging
from .metrics import MetricsCollector, ResilienceMetrics

__all__ = [
    "LogContext",
    "get_logger",
    "log_context",
    "setup_logging",
    "MetricsCollector",
    "ResilienceMetrics",
]
