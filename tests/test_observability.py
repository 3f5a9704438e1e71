"""Tests for research_core/observability."""

import json
import logging

import pytest

from research_core.observability.logger import (
    PrettyFormatter,
    StructuredFormatter,
    current_context,
    get_logger,
    log_context,
    reset_logging,
    setup_logging,
)
from research_core.observability.metrics import MetricsCollector


def make_record(msg: str = "Retrying request", **extra) -> logging.LogRecord:
    record = logging.LogRecord("research_core.test", logging.WARNING, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogContext:
    """Tests for log_context."""

    def test_nested_contexts_merge(self):
        """Inner contexts add fields and restore on exit."""
        with log_context(service="perplexity"):
            with log_context(job_id="abc"):
                ctx = current_context()
                assert ctx.service == "perplexity"
                assert ctx.job_id == "abc"
            assert current_context().job_id is None
        assert current_context().service is None

    def test_unknown_field_rejected(self):
        """Only known context fields are accepted."""
        with pytest.raises(TypeError):
            log_context(user="x")


class TestFormatters:
    """Tests for StructuredFormatter and PrettyFormatter."""

    def test_structured_includes_context_and_extra(self):
        """JSON lines carry context fields and record extras."""
        with log_context(queue="deep-research", job_id="abc123"):
            line = StructuredFormatter().format(make_record(attempt=2))

        entry = json.loads(line)
        assert entry["level"] == "warning"
        assert entry["message"] == "Retrying request"
        assert entry["queue"] == "deep-research"
        assert entry["job_id"] == "abc123"
        assert entry["attempt"] == 2

    def test_pretty_prefix(self):
        """Pretty lines show service and queue prefixes."""
        with log_context(service="claude", queue="research"):
            line = PrettyFormatter().format(make_record(delay=1.5))

        assert "[claude] [research] Retrying request" in line
        assert "delay=1.5" in line


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_configures_once(self):
        """setup_logging installs one handler until reset."""
        reset_logging()
        first = logging.NullHandler()
        second = logging.NullHandler()
        try:
            setup_logging(level="debug", handler=first)
            setup_logging(level="info", handler=second)

            root = logging.getLogger("research_core")
            assert root.handlers == [first]
            assert root.level == logging.DEBUG
        finally:
            reset_logging()

    def test_get_logger_namespace(self):
        """Loggers live under the research_core namespace."""
        assert get_logger("worker").name == "research_core.worker"
        assert get_logger("research_core.jobs").name == "research_core.jobs"


class TestMetrics:
    """Tests for MetricsCollector."""

    def test_counters(self):
        """Counters accumulate per key."""
        metrics = MetricsCollector()
        metrics.current.record_retry("perplexity", 503)
        metrics.current.record_retry("perplexity", None)
        metrics.current.record_circuit_transition("perplexity", "closed", "open")
        metrics.current.record_job_outcome("research", "completed", duration=2.0)

        stats = metrics.get_stats()
        assert stats["retries"] == {"perplexity": 2}
        assert stats["retries_by_status"] == {"503": 1, "network": 1}
        assert metrics.current.circuit_trips == 1
        assert stats["job_outcomes"] == {"research:completed": 1}

    def test_summary(self):
        """The summary lists retries and job outcomes."""
        metrics = MetricsCollector()
        metrics.current.record_retry("claude", 429)
        metrics.current.record_rate_limit_wait("claude", 12.0)

        summary = metrics.get_summary()

        assert "Retries: 1" in summary
        assert "claude: 1 (12.0s)" in summary

    def test_rotate(self):
        """rotate() archives counters and starts fresh."""
        metrics = MetricsCollector()
        metrics.current.record_exhausted("claude")

        previous = metrics.rotate()

        assert previous.exhausted == {"claude": 1}
        assert metrics.current.exhausted == {}
        assert metrics.history == [previous]
