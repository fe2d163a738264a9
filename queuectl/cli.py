import json
import logging
from typing import Optional

import click

from . import __version__
from .config import ConfigStore
from .errors import QueueError
from .manager import QueueManager
from .models import JobState
from .store import JobStore
from .worker import WorkerPool, read_live_pool, stop_running_pool


LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


class ClickHandler(logging.Handler):
    """Send log records to stderr through click, so output capture sees them."""

    def emit(self, record):
        try:
            click.echo(self.format(record), err=True)
        except Exception:
            self.handleError(record)


def setup_logging(level: int) -> None:
    root = logging.getLogger()
    for h in [h for h in root.handlers if isinstance(h, ClickHandler)]:
        root.removeHandler(h)
    handler = ClickHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


class AppContext:
    def __init__(self, data_dir: Optional[str], verbose: bool):
        self.data_dir = data_dir
        self.verbose = verbose
        self._manager: Optional[QueueManager] = None

    @property
    def manager(self) -> QueueManager:
        if self._manager is None:
            config = ConfigStore(self.data_dir)
            store = JobStore(self.data_dir, lock_timeout=float(config.get("lock_timeout")))
            self._manager = QueueManager(store, config)
        return self._manager


def fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    raise SystemExit(1)


pass_app = click.make_pass_decorator(AppContext)


@click.group(help="queuectl — background job queue CLI")
@click.option("--data-dir", envvar="QUEUECTL_DATA_DIR", default=None,
              help="Data directory (default: $QUEUECTL_DATA_DIR or ./data)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.version_option(__version__, prog_name="queuectl")
@click.pass_context
def cli(ctx, data_dir, verbose):
    setup_logging(logging.DEBUG if verbose else logging.WARNING)
    ctx.obj = AppContext(data_dir, verbose)


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a job: a shell command, or JSON like '{\"command\": \"...\", \"max_retries\": 2}'")
@click.argument("job")
@click.option("-r", "--retries", "max_retries", default=None, type=click.IntRange(min=0),
              help="Override max retry count")
@pass_app
def enqueue_cmd(app, job, max_retries):
    command = job
    try:
        data = json.loads(job)
    except ValueError:
        data = None
    if isinstance(data, dict):
        command = data.get("command", "")
        if data.get("max_retries") is not None:
            max_retries = data["max_retries"]

    try:
        created = app.manager.enqueue(command, max_retries=max_retries)
    except (QueueError, OSError) as e:
        fail(str(e))
    click.secho("Job enqueued successfully", fg="green")
    click.echo(f"Job ID: {created.id}")
    click.echo(f"Command: {created.command}")
    click.echo(f"Max Retries: {created.max_retries}")


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("-c", "--count", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of worker threads")
@pass_app
def worker_start(app, count):
    if not app.verbose:
        logging.getLogger().setLevel(logging.INFO)
    try:
        pool = WorkerPool(app.manager, count=count)
        pool.install_signal_handlers()
        pool.start()
    except (QueueError, OSError) as e:
        fail(str(e))
    click.secho(f"Started {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    pool.run_until_stopped()
    for s in pool.snapshot():
        click.echo(f"{s['id']}: completed={s['jobs_completed']} failed={s['jobs_failed']} errors={s['errors']}")
    click.secho("Workers stopped.", fg="yellow")


@worker_group.command("stop", help="Stop the running worker pool gracefully")
@pass_app
def worker_stop(app):
    try:
        timeout = float(app.manager.config.get("graceful_shutdown_timeout")) + 5
        outcome = stop_running_pool(app.manager.store, timeout=timeout)
    except (QueueError, OSError) as e:
        fail(str(e))

    if outcome == "not_running":
        click.secho("No workers are running.", fg="yellow")
    elif outcome == "stale":
        click.secho("Workers were not running; removed stale pool file.", fg="yellow")
    elif outcome == "stopped":
        click.secho("Workers stopped.", fg="green")
    else:
        fail("Workers did not stop within the shutdown timeout.")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice([s.value for s in JobState]), default=None)
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
@pass_app
def list_cmd(app, state, limit):
    try:
        rows = app.manager.list_jobs(JobState(state) if state else None, limit=limit)
    except (QueueError, OSError) as e:
        fail(str(e))

    if not rows:
        click.echo("No jobs.")
        return

    for r in rows:
        click.echo(
            f"{r.id:>36} | {r.state.value:<10} | attempts={r.attempts}/{r.max_retries} "
            f"| next={r.next_retry_at} | cmd={r.command} | last_error={r.error_message}"
        )
    click.echo(f"Showing {len(rows)} job(s)")


@cli.command("status")
@pass_app
def status_cmd(app):
    try:
        counts = app.manager.stats()
        pool = read_live_pool(app.manager.store)
    except (QueueError, OSError) as e:
        fail(str(e))

    click.echo(json.dumps({
        "jobs": counts,
        "total": sum(counts.values()),
        "workers": {
            "running": pool is not None,
            "pid": pool.pid if pool else None,
            "members": pool.workers if pool else [],
            "started_at": pool.started_at if pool else None,
        },
    }, indent=2))


@cli.command("cleanup", help="Delete completed jobs older than N days")
@click.option("--days", type=click.FloatRange(min=0), default=7, show_default=True)
@pass_app
def cleanup_cmd(app, days):
    try:
        removed = app.manager.cleanup(days)
    except (QueueError, OSError) as e:
        fail(str(e))
    click.secho(f"Removed {removed} completed job(s).", fg="green")


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
@pass_app
def dlq_list_cmd(app):
    try:
        rows = app.manager.dlq_list()
    except (QueueError, OSError) as e:
        fail(str(e))

    if not rows:
        click.echo("DLQ is empty.")
        return

    for r in rows:
        click.echo(
            f"{r.id} | attempts={r.attempts} | failed_at={r.updated_at} "
            f"| last_error={r.error_message} | cmd={r.command}"
        )


@dlq_group.command("retry")
@click.argument("job_id")
@pass_app
def dlq_retry_cmd(app, job_id):
    try:
        retried = app.manager.retry_from_dlq(job_id)
    except (QueueError, OSError) as e:
        fail(str(e))
    if not retried:
        fail(f"Job {job_id} not found in DLQ.")
    click.secho(f"Re-queued DLQ job {job_id}.", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.argument("key", required=False)
@pass_app
def config_get(app, key):
    try:
        config = app.manager.config
        if key:
            click.echo(f"{key}: {config.get(key)}")
        else:
            click.echo(json.dumps(config.all(), indent=2))
    except (QueueError, OSError) as e:
        fail(str(e))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@pass_app
def config_set_cmd(app, key, value):
    try:
        stored = app.manager.config.set(key, value)
    except (QueueError, OSError) as e:
        fail(str(e))
    click.secho(f"Config updated: {key}={stored}", fg="green")


def main():
    cli()
