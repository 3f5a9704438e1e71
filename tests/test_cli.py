"""CLI tests."""

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from research_core.cli.main import app
from research_core.core.errors import ConfigurationError

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_settings(settings):
    with patch("research_core.cli.main.get_settings", return_value=settings):
        yield settings


class TestInfoCommands:
    """Commands that only read settings."""

    def test_config(self):
        """config prints the backend and masks the Redis URL."""
        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "memory" in result.output
        assert "(not set)" in result.output

    def test_limits(self):
        """limits lists every provider."""
        result = runner.invoke(app, ["limits"])

        assert result.exit_code == 0
        assert "claude" in result.output
        assert "perplexity" in result.output


class TestQueueCommands:
    """Commands that build a runtime."""

    def test_counts(self):
        """counts prints a table for the queue."""
        result = runner.invoke(app, ["counts", "research"])

        assert result.exit_code == 0
        assert "in-memory backend" in result.output
        assert "Queue research" in result.output

    def test_status_not_found(self):
        """Unknown jobs exit with 1."""
        result = runner.invoke(app, ["status", "research", "missing"])

        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_pause_and_resume(self):
        """pause and resume report success."""
        assert "paused" in runner.invoke(app, ["pause", "research"]).output
        assert "resumed" in runner.invoke(app, ["resume", "research"]).output

    def test_cancel_unknown(self):
        """Cancelling an unknown job exits with 1."""
        result = runner.invoke(app, ["cancel", "missing"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_health_ok(self):
        """A quiet queue is healthy."""
        result = runner.invoke(app, ["health", "research", "--quiet"])

        assert result.exit_code == 0
        assert "ok" in result.output

    def test_runtime_error_exits_1(self):
        """Errors while building the runtime exit with 1."""
        with patch(
            "research_core.cli.main.Runtime.from_settings",
            side_effect=ConfigurationError("REDIS_URL is malformed"),
        ):
            result = runner.invoke(app, ["counts", "research"])

        assert result.exit_code == 1
        assert "REDIS_URL is malformed" in result.output
