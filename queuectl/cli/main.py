import click
import json
import logging
from functools import wraps
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from ..models.errors import QueueError
from ..models.job import JobState
from ..storage.config import ConfigRepository
from ..storage.repository import JobRepository
from ..storage.store import Store, default_store_path
from ..workers.worker import WorkerManager, request_stop

console = Console()

STATE_CHOICES = [state.value for state in JobState]


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def handle_queue_errors(fn):
    """Report queue errors in red and exit non-zero"""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except QueueError as e:
            kind = type(e).__name__
            where = f" (job {e.job_id})" if e.job_id else ""
            console.print(f"[red]{kind}{where}: {e}[/red]")
            raise SystemExit(1)

    return wrapper


def shorten(text, width: int = 50) -> str:
    if not text:
        return ""
    return text[:width] + "..." if len(text) > width else text


def format_ts(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else ""


@click.group()
@click.option("--data-file", envvar="QUEUECTL_DATA", default=default_store_path,
              show_default="~/.queuectl/queue.json", help="Path of the queue file")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
@handle_queue_errors
def cli(ctx, data_file, verbose):
    """queuectl - a CLI-based background job queue system"""
    setup_logging(verbose)
    ctx.obj = Store(data_file)


@cli.command()
@click.argument('job_json')
@click.pass_obj
@handle_queue_errors
def enqueue(store, job_json):
    """Add a new job to the queue"""
    try:
        job_data = json.loads(job_json)
    except json.JSONDecodeError as e:
        console.print(f"[red]InvalidJobSpec: job JSON does not parse: {e}[/red]")
        raise SystemExit(1)

    job = JobRepository(store).create(job_data)
    console.print(f"[green]Job {job.id} enqueued successfully[/green]")


@cli.group()
def worker():
    """Manage worker processes"""
    pass


@worker.command('start')
@click.option('--count', default=1, type=click.IntRange(min=1), show_default=True,
              help='Number of workers to start')
@click.option('--poll-interval', default=500, type=click.IntRange(min=1), show_default=True,
              help='Idle poll interval in milliseconds')
@click.pass_obj
@handle_queue_errors
def worker_start(store, count, poll_interval):
    """Run workers in the foreground until stopped"""
    console.print(f"[cyan]Starting {count} worker(s). Press Ctrl+C to stop[/cyan]")
    WorkerManager(store).start_workers(count, poll_interval / 1000.0)
    console.print("[yellow]Workers stopped[/yellow]")


@worker.command('stop')
@click.pass_obj
@handle_queue_errors
def worker_stop(store):
    """Ask running workers to stop after their current job"""
    request_stop(store)
    console.print("[green]Requested workers to stop. They will finish current jobs and exit.[/green]")


@cli.command()
@click.pass_obj
@handle_queue_errors
def status(store):
    """Show summary of all job states"""
    counts = JobRepository(store).state_counts()

    table = Table(title="Queue Status")
    table.add_column("State", style="cyan")
    table.add_column("Count", style="magenta")
    for state, count in counts.items():
        table.add_row(state, str(count))

    console.print(table)


@cli.command('list')
@click.option('--state', type=click.Choice(STATE_CHOICES), help='Filter jobs by state')
@click.pass_obj
@handle_queue_errors
def list_jobs(store, state):
    """List jobs, newest first"""
    jobs = JobRepository(store).list(state)

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs {f'in {state} state' if state else ''}")
    table.add_column("ID", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("State", style="green")
    table.add_column("Attempts", style="yellow")
    table.add_column("Run At", style="blue")
    table.add_column("Created At", style="blue")

    for job in jobs:
        table.add_row(
            job.id,
            shorten(job.command),
            job.state.value,
            f"{job.attempts}/{job.max_retries}",
            format_ts(job.run_at),
            format_ts(job.created_at),
        )

    console.print(table)


@cli.command()
@click.argument('job_id')
@click.pass_obj
@handle_queue_errors
def show(store, job_id):
    """Show every field of one job"""
    job = JobRepository(store).get_by_id(job_id)
    if job is None:
        console.print(f"[red]NotFound (job {job_id}): Job {job_id} not found[/red]")
        raise SystemExit(1)
    click.echo(job.model_dump_json(indent=2))


@cli.group()
def dlq():
    """Manage Dead Letter Queue"""
    pass


@dlq.command('list')
@click.pass_obj
@handle_queue_errors
def dlq_list(store):
    """List jobs in the Dead Letter Queue"""
    dead_jobs = JobRepository(store).list_dead()

    if not dead_jobs:
        console.print("[yellow]No jobs in DLQ[/yellow]")
        return

    table = Table(title="Dead Letter Queue")
    table.add_column("ID", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("Attempts", style="yellow")
    table.add_column("Updated At", style="blue")
    table.add_column("Last Error", style="red")

    for job in dead_jobs:
        table.add_row(
            job.id,
            shorten(job.command),
            str(job.attempts),
            format_ts(job.updated_at),
            shorten(job.last_error),
        )

    console.print(table)


@dlq.command('retry')
@click.argument('job_id')
@click.pass_obj
@handle_queue_errors
def dlq_retry(store, job_id):
    """Move a dead job back to the pending queue"""
    JobRepository(store).requeue_dead(job_id)
    console.print(f"[green]Job {job_id} moved back to pending queue[/green]")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command('get')
@click.argument('key', required=False)
@click.pass_obj
@handle_queue_errors
def config_get(store, key):
    """Get a configuration value, or every value when no key is given"""
    repository = ConfigRepository(store)
    if key is None:
        table = Table(title="Configuration")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="magenta")
        for name, value in sorted(repository.all().items()):
            table.add_row(name, value)
        console.print(table)
        return

    value = repository.get(key)
    if value is None:
        console.print(f"[yellow]Configuration key '{key}' not found[/yellow]")
    else:
        console.print(f"{key}: {value}")


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_obj
@handle_queue_errors
def config_set(store, key, value):
    """Set a configuration value"""
    ConfigRepository(store).set(key, value)
    console.print(f"[green]Set {key} to {value}[/green]")


if __name__ == '__main__':
    cli()
