"""Structured JSON logger for research core.

Provides context-aware logging with automatic JSON formatting.

Usage:
    from research_core.observability import get_logger, log_context

    logger = get_logger(__name__)

    with log_context(queue="deep-research", job_id="abc123"):
        logger.info("Job started", extra={"attempt": 1})
        # Output: {"timestamp": "...", "queue": "deep-research", "job_id": "abc123", ...}
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER_NAME = "research_core"

# LogRecord attributes that are never treated as extra fields
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


@dataclass
class LogContext:
    """Context for structured logging.

    Attributes are automatically included in all log messages
    within this context.
    """

    service: str | None = None
    provider: str | None = None
    queue: str | None = None
    job_id: str | None = None
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}


# Context variable to store current log context
_log_context: contextvars.ContextVar[LogContext] = contextvars.ContextVar(
    "log_context",
    default=LogContext(),
)

_CONTEXT_FIELDS = tuple(f.name for f in fields(LogContext))


class _ContextManager:
    """Context manager for setting log context."""

    def __init__(self, **kwargs: Any) -> None:
        unknown = set(kwargs) - set(_CONTEXT_FIELDS)
        if unknown:
            raise TypeError(f"Unknown log context fields: {sorted(unknown)}")
        self.kwargs = kwargs
        self.token: contextvars.Token[LogContext] | None = None

    def __enter__(self) -> LogContext:
        current = _log_context.get()
        # Merge with current context
        merged = {name: self.kwargs.get(name, getattr(current, name)) for name in _CONTEXT_FIELDS}
        new_context = LogContext(**merged)
        self.token = _log_context.set(new_context)
        return new_context

    def __exit__(self, *args: Any) -> None:
        if self.token is not None:
            _log_context.reset(self.token)


def log_context(**kwargs: Any) -> _ContextManager:
    """Create a context manager for setting log context.

    Args:
        **kwargs: Context fields to set (service, provider, queue, job_id,
            correlation_id)

    Returns:
        Context manager that sets the context

    Example:
        with log_context(service="perplexity"):
            logger.warning("Retrying request")
    """
    return _ContextManager(**kwargs)


def current_context() -> LogContext:
    """Return the log context active in the current task."""
    return _log_context.get()


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with context support."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = _log_context.get()

        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Context first, record extras override
        entry.update(ctx.to_dict())
        entry.update(_extra_fields(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class PrettyFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        ctx = _log_context.get()
        color = self.COLORS.get(record.levelname, "")

        prefix_parts = []
        if ctx.service or ctx.provider:
            prefix_parts.append(f"[{ctx.service or ctx.provider}]")
        if ctx.queue:
            prefix_parts.append(f"[{ctx.queue}]")
        if ctx.job_id:
            prefix_parts.append(f"[{ctx.job_id[:8]}]")

        prefix = " ".join(prefix_parts)
        if prefix:
            prefix += " "

        timestamp = datetime.now().strftime("%H:%M:%S")
        level = record.levelname[:4]
        message = record.getMessage()

        extras = [f"{key}={value}" for key, value in _extra_fields(record).items()]
        extra_str = " | " + ", ".join(extras) if extras else ""

        formatted = f"{timestamp} {color}{level}{self.RESET} {prefix}{message}{extra_str}"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


# Track if logging has been set up
_logging_configured = False


def setup_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    quiet: bool = False,
    handler: logging.Handler | None = None,
) -> None:
    """Set up logging for research core.

    Args:
        level: Logging level (default: INFO)
        json_format: Use JSON format (default: False, use pretty format)
        quiet: Suppress all output except errors (default: False)
        handler: Use this handler instead of a stderr stream handler
    """
    global _logging_configured

    if _logging_configured:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.handlers.clear()

    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        if json_format:
            handler.setFormatter(StructuredFormatter())
        else:
            handler.setFormatter(PrettyFormatter())
    handler.setLevel(logging.ERROR if quiet else level)
    root.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _logging_configured = True


def reset_logging() -> None:
    """Allow setup_logging to run again (used by the CLI and tests)."""
    global _logging_configured
    _logging_configured = False


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module.

    Args:
        name: Module name (usually __name__)

    Returns:
        Logger under the research_core namespace
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
