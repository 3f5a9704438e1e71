"""Research Core operator CLI.

Usage:
    research-core config
    research-core limits
    research-core counts QUEUE
    research-core status QUEUE JOB_ID
    research-core pause QUEUE
    research-core resume QUEUE
    research-core cancel JOB_ID
    research-core health [QUEUE ...]

Queue commands act on the configured backend. With the in-memory backend
each CLI process sees an empty queue, so set REDIS_URL to inspect a running
service.

Exit codes: 0=success, 1=error
"""

# Load .env file before any other imports
from dotenv import load_dotenv

load_dotenv()

import asyncio
import logging
from typing import Annotated, Any, Awaitable, Callable

import typer
from redis.exceptions import RedisError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from research_core.config.settings import Settings, get_settings, mask_secret
from research_core.core.errors import ResearchCoreError
from research_core.jobs.models import JobStatus
from research_core.observability.logger import setup_logging as _setup_core_logging
from research_core.runtime import Runtime

# Create CLI app
app = typer.Typer(
    name="research-core",
    help="Research Core resilience and job queue CLI",
    add_completion=False,
)

console = Console()

STATUS_STYLES = {
    JobStatus.WAITING: "cyan",
    JobStatus.DELAYED: "blue",
    JobStatus.ACTIVE: "yellow",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.NOT_FOUND: "dim",
}


def setup_logging(quiet: bool = False, verbose: bool = False) -> None:
    """Configure logging with rich handler."""
    level = logging.WARNING if quiet else (logging.DEBUG if verbose else logging.INFO)
    _setup_core_logging(level=level, handler=RichHandler(console=console, show_path=False))


def _run(settings: Settings, action: Callable[[Runtime], Awaitable[Any]]) -> Any:
    """Build a runtime, run one action against it, and close it."""

    async def main() -> Any:
        runtime = Runtime.from_settings(settings)
        try:
            return await action(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(main())
    except (ResearchCoreError, RedisError, ValueError, OSError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)


def _warn_if_memory(settings: Settings) -> None:
    if not settings.has_redis:
        console.print(
            "[yellow]Using the in-memory backend: this process only sees its own jobs.[/yellow]"
        )


@app.command()
def config() -> None:
    """Show the effective configuration (secrets masked)."""
    settings = get_settings()

    table = Table(title="Configuration")
    table.add_column("Setting", style="bold")
    table.add_column("Value")

    table.add_row("App", f"{settings.app_name} v{settings.app_version}")
    table.add_row("Queue backend", "redis" if settings.has_redis else "memory")
    table.add_row("REDIS_URL", mask_secret(settings.redis_url, 8))
    table.add_row("Queue prefix", settings.queue_prefix)
    table.add_row("Job attempts", str(settings.job_attempts))
    table.add_row("Job backoff", f"{settings.job_backoff_delay}s")
    table.add_row("HTTP retries", f"{settings.max_retries} (base {settings.retry_delay}s)")
    table.add_row("Request timeout", f"{settings.request_timeout}s")
    table.add_row(
        "Circuit breaker",
        f"{settings.breaker_failure_threshold} failures / {settings.breaker_reset_timeout}s",
    )
    table.add_row(
        "Throttle",
        f"{settings.throttle_step_delay}s per waiting job (min {settings.throttle_min_delay}s)",
    )

    console.print(table)


@app.command()
def limits() -> None:
    """Show rate-limit ceilings per provider."""
    settings = get_settings()

    table = Table(title="Provider Rate Limits")
    table.add_column("Provider", style="bold")
    table.add_column("Per minute", justify="right")
    table.add_column("Per hour", justify="right")
    table.add_column("Per day", justify="right")
    table.add_column("Tokens/min", justify="right")
    table.add_column("Expensive", justify="right")

    def fmt(value: int | None) -> str:
        return f"{value:,}" if value is not None else "-"

    for provider, provider_limits in settings.provider_limits().items():
        expensive = "-"
        if provider_limits.expensive_per_window is not None:
            expensive = (
                f"{provider_limits.expensive_per_window} / "
                f"{provider_limits.expensive_window_seconds:.0f}s"
            )
        table.add_row(
            provider,
            fmt(provider_limits.requests_per_minute),
            fmt(provider_limits.requests_per_hour),
            fmt(provider_limits.requests_per_day),
            fmt(provider_limits.tokens_per_minute),
            expensive,
        )

    console.print(table)


@app.command()
def counts(
    queue: Annotated[str, typer.Argument(help="Queue name")],
) -> None:
    """Show job counts for a queue."""
    settings = get_settings()
    _warn_if_memory(settings)

    async def action(runtime: Runtime):
        return await runtime.jobs.get_job_counts(queue), await runtime.jobs.is_paused(queue)

    job_counts, paused = _run(settings, action)

    table = Table(title=f"Queue {queue}" + (" (paused)" if paused else ""))
    for name in ("waiting", "active", "delayed", "completed", "failed"):
        table.add_column(name.capitalize(), justify="right")
    table.add_row(
        str(job_counts.waiting),
        str(job_counts.active),
        str(job_counts.delayed),
        str(job_counts.completed),
        str(job_counts.failed),
    )
    console.print(table)


@app.command()
def status(
    queue: Annotated[str, typer.Argument(help="Queue name")],
    job_id: Annotated[str, typer.Argument(help="Job id")],
) -> None:
    """Show the status of a job."""
    settings = get_settings()
    _warn_if_memory(settings)

    job = _run(settings, lambda runtime: runtime.jobs.get_job_status(queue, job_id))

    style = STATUS_STYLES.get(job.status, "")
    console.print(f"Job [bold]{job.id}[/bold] in {queue}: [{style}]{job.status.value}[/{style}]")
    if job.status == JobStatus.NOT_FOUND:
        raise typer.Exit(code=1)

    console.print(f"  Progress: {job.progress}%")
    console.print(f"  Attempts: {job.attempts_made}/{job.options.max_attempts}")
    if job.error:
        console.print(f"  [red]Error: {job.error.message}[/red]")
    if job.result is not None:
        console.print(f"  Result: {job.result}")


@app.command()
def pause(
    queue: Annotated[str, typer.Argument(help="Queue name")],
) -> None:
    """Pause a queue (waiting jobs are kept)."""
    settings = get_settings()
    _warn_if_memory(settings)
    _run(settings, lambda runtime: runtime.jobs.pause_queue(queue))
    console.print(f"[green]Queue {queue} paused[/green]")


@app.command()
def resume(
    queue: Annotated[str, typer.Argument(help="Queue name")],
) -> None:
    """Resume a paused queue."""
    settings = get_settings()
    _warn_if_memory(settings)
    _run(settings, lambda runtime: runtime.jobs.resume_queue(queue))
    console.print(f"[green]Queue {queue} resumed[/green]")


@app.command()
def cancel(
    job_id: Annotated[str, typer.Argument(help="Job id")],
) -> None:
    """Cancel a waiting or delayed job."""
    settings = get_settings()
    _warn_if_memory(settings)

    if not _run(settings, lambda runtime: runtime.jobs.cancel_job(job_id)):
        console.print(f"[red]Job {job_id} not found or no longer cancellable[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Job {job_id} cancelled[/green]")


@app.command()
def health(
    queues: Annotated[list[str], typer.Argument(help="Queues to check")],
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Minimal output")] = False,
) -> None:
    """Run one backlog and failure-rate check.

    Exits with 1 when any queue raised an alert.
    """
    setup_logging(quiet=quiet)
    settings = get_settings()
    _warn_if_memory(settings)

    report = _run(settings, lambda runtime: runtime.jobs.check_queue_health(queues))

    table = Table(title="Queue Health")
    table.add_column("Queue", style="bold")
    table.add_column("Waiting", justify="right")
    table.add_column("Active", justify="right")
    table.add_column("Failure rate", justify="right")
    table.add_column("Status")

    for queue_health in report:
        state = (
            "[green]ok[/green]"
            if queue_health.healthy
            else "[red]" + "; ".join(alert.message for alert in queue_health.alerts) + "[/red]"
        )
        table.add_row(
            queue_health.queue,
            str(queue_health.counts.waiting),
            str(queue_health.counts.active),
            f"{queue_health.counts.failure_rate:.0%}",
            state,
        )

    console.print(table)

    if not all(queue_health.healthy for queue_health in report):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
