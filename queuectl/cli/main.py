"""
queuectl command line interface.

Every ``QueueError`` (and enqueue validation failure) is reported as a red
error message with exit status 1.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from queuectl import __version__
from queuectl.config import Settings, get_settings
from queuectl.config_store import ConfigStore
from queuectl.constants import JobState
from queuectl.db import Job, close_db, init_db
from queuectl.errors import QueueError
from queuectl.lifecycle import JobQueue
from queuectl.observability.logging import setup_logging
from queuectl.observability.tracing import setup_tracing
from queuectl.supervisor import WorkerPool, read_pool_status, request_pool_shutdown
from queuectl.types.job import JobRecord

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)

STATE_CHOICES = [state.value for state in JobState]


class QueueCommandError(click.ClickException):
    """Command failure rendered in red on stderr."""

    def show(self, file: Any = None) -> None:
        err_console.print(f"[red]Error:[/red] {escape(self.message)}")


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"]) or "job"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


def _run(settings: Settings, operation: Callable[[JobQueue], Awaitable[T]]) -> T:
    """Run a queue operation against the store and translate queue errors."""

    async def runner() -> T:
        await init_db(settings)
        try:
            return await operation(JobQueue(ConfigStore(settings.resolved_config_file), settings))
        finally:
            await close_db()

    try:
        return asyncio.run(runner())
    except ValidationError as e:
        raise QueueCommandError(f"Invalid job: {_describe_validation_error(e)}") from e
    except QueueError as e:
        raise QueueCommandError(str(e)) from e


def _record(job: Job) -> dict[str, Any]:
    return JobRecord.model_validate(job).model_dump(mode="json")


def _truncate(text: str | None, width: int = 50) -> str:
    if not text:
        return ""
    return text if len(text) <= width else text[: width - 3] + "..."


def _print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.version_option(__version__, prog_name="queuectl")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """queuectl - a persistent background job queue for shell commands."""
    settings = get_settings()
    setup_logging(settings)
    ctx.obj = settings


@cli.command()
@click.argument("job_json")
@click.pass_obj
def enqueue(settings: Settings, job_json: str) -> None:
    """Add a job, e.g. '{"id": "job1", "command": "echo hi"}'."""
    try:
        payload = json.loads(job_json)
    except json.JSONDecodeError as e:
        raise QueueCommandError(f"Job must be valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise QueueCommandError("Job must be a JSON object")

    job = _run(settings, lambda queue: queue.enqueue(payload))
    console.print(f"Enqueued job [green]{escape(job.id)}[/green]")


@cli.group()
def worker() -> None:
    """Manage worker processes."""


@worker.command("start")
@click.option("--count", default=1, show_default=True, type=click.IntRange(min=1),
              help="Number of workers to start")
@click.pass_obj
def worker_start(settings: Settings, count: int) -> None:
    """Run a pool of workers in the foreground until interrupted."""
    setup_tracing(settings)
    pool = WorkerPool(settings)
    err_console.print(f"Starting {count} worker(s). Press Ctrl+C to stop.")
    pool.run(count)
    err_console.print("[green]Workers stopped[/green]")


@worker.command("stop")
@click.pass_obj
def worker_stop(settings: Settings) -> None:
    """Ask the running worker pool to shut down gracefully."""
    if request_pool_shutdown(settings.resolved_state_file):
        console.print("[green]Shutdown requested; workers finish their current job[/green]")
    else:
        console.print("[yellow]No running worker pool found[/yellow]")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print machine readable output")
@click.pass_obj
def status(settings: Settings, as_json: bool) -> None:
    """Show job counts per state and worker pool status."""
    stats = _run(settings, lambda queue: queue.statistics())
    pool = read_pool_status(settings.resolved_state_file)

    if as_json:
        _print_json({"jobs": stats.model_dump(), "workers": pool.model_dump(by_alias=True)})
        return

    table = Table(title="Queue Status")
    table.add_column("State", style="cyan")
    table.add_column("Count", style="magenta", justify="right")
    for state, count in stats.model_dump().items():
        table.add_row(state, str(count))
    table.add_row("total", str(stats.total), style="bold")
    console.print(table)

    console.print(
        f"Workers: [green]{pool.active}[/green] active of {pool.total}, "
        f"uptime {pool.uptime_ms / 1000:.0f}s"
    )


@cli.command("list")
@click.option("--state", type=click.Choice(STATE_CHOICES), help="Filter jobs by state")
@click.option("--json", "as_json", is_flag=True, help="Print machine readable output")
@click.pass_obj
def list_jobs(settings: Settings, state: str | None, as_json: bool) -> None:
    """List jobs, oldest first."""
    jobs = _run(settings, lambda queue: queue.list_jobs(state))

    if as_json:
        _print_json([_record(job) for job in jobs])
        return

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs in {state} state" if state else "Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("State", style="green")
    table.add_column("Attempts", style="yellow", justify="right")
    table.add_column("Created At", style="blue")
    table.add_column("Error", style="red")

    for job in jobs:
        table.add_row(
            escape(job.id),
            escape(_truncate(job.command)),
            job.state.value,
            f"{job.attempts}/{job.max_retries + 1}",
            job.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            escape(_truncate(job.error, 40)),
        )

    console.print(table)


@cli.group()
def dlq() -> None:
    """Inspect and retry jobs in the dead letter queue."""


@dlq.command("list")
@click.option("--json", "as_json", is_flag=True, help="Print machine readable output")
@click.pass_obj
def dlq_list(settings: Settings, as_json: bool) -> None:
    """List jobs that exhausted their retries."""
    jobs = _run(settings, lambda queue: queue.list_dlq())

    if as_json:
        _print_json([_record(job) for job in jobs])
        return

    if not jobs:
        console.print("[yellow]No jobs in DLQ[/yellow]")
        return

    table = Table(title="Dead Letter Queue")
    table.add_column("ID", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("Attempts", style="yellow", justify="right")
    table.add_column("Last Error", style="red")

    for job in jobs:
        table.add_row(
            escape(job.id),
            escape(_truncate(job.command)),
            str(job.attempts),
            escape(_truncate(job.error)),
        )

    console.print(table)


@dlq.command("retry")
@click.argument("job_id")
@click.pass_obj
def dlq_retry(settings: Settings, job_id: str) -> None:
    """Move a dead job back to pending with a fresh retry budget."""
    job = _run(settings, lambda queue: queue.retry_dead(job_id))
    console.print(f"Job [green]{escape(job.id)}[/green] moved back to pending")


@cli.group()
def config() -> None:
    """Read and change queue configuration."""


@config.command("get")
@click.argument("key", required=False)
@click.pass_obj
def config_get(settings: Settings, key: str | None) -> None:
    """Print one config value, or all of them."""
    store = ConfigStore(settings.resolved_config_file)
    try:
        values = store.get_all()
    except QueueError as e:
        raise QueueCommandError(str(e)) from e

    if key is None:
        for name, value in values.items():
            click.echo(f"{name} = {value}")
        return

    if key not in values:
        raise QueueCommandError(f"Unknown config key '{key}'")
    click.echo(str(values[key]))


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(settings: Settings, key: str, value: str) -> None:
    """Set a config value, e.g. 'max-retries 5'."""
    store = ConfigStore(settings.resolved_config_file)
    try:
        stored = store.set(key, value)
    except QueueError as e:
        raise QueueCommandError(str(e)) from e
    console.print(f"[green]{escape(key)} = {stored}[/green]")


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
