"""
Command line entry point.

Commands:
    fieldnotify init-db    Create database tables
    fieldnotify sweep      Run one escalation sweep
    fieldnotify maintain   Run one maintenance pass
    fieldnotify worker     Run the escalation and maintenance schedulers
"""

import signal
import sys
import threading

import click

from fieldnotify.src.config.settings import get_settings
from fieldnotify.src.engine import NotificationEngine
from fieldnotify.src.utils.logging_config import init_logging


def _build_engine(ctx: click.Context, async_delivery: bool = True) -> NotificationEngine:
    settings = get_settings()
    database_url = ctx.obj.get("database_url")
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    return NotificationEngine(settings=settings, async_delivery=async_delivery)


@click.group()
@click.option(
    "--database-url",
    envvar="FIELDNOTIFY_DB_URL",
    default=None,
    help="SQLAlchemy database URL (overrides FIELDNOTIFY_DB_URL).",
)
@click.pass_context
def cli(ctx: click.Context, database_url: str) -> None:
    """
    Field notification engine.

    Use 'fieldnotify COMMAND --help' for more information on a command.
    """
    ctx.ensure_object(dict)
    ctx.obj["database_url"] = database_url
    init_logging()


@cli.command("init-db")
@click.pass_context
def init_db_command(ctx: click.Context) -> None:
    """Create all database tables."""
    engine = _build_engine(ctx, async_delivery=False)
    engine.init_db()
    click.echo(click.style("Database initialized", fg="green"))


@cli.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Run one escalation sweep and print its summary."""
    engine = _build_engine(ctx, async_delivery=False)
    try:
        result = engine.trigger_sweep()
    finally:
        engine.stop()

    click.echo(f"Candidates: {result.candidates}")
    click.echo(f"Escalated:  {result.escalated}")
    click.echo(f"Failed:     {result.failed}")
    click.echo(f"Skipped:    {result.skipped}")
    if result.errors:
        click.echo(click.style(f"Errors: {len(result.errors)}", fg="red"))
        sys.exit(1)


@cli.command()
@click.pass_context
def maintain(ctx: click.Context) -> None:
    """Run one maintenance pass (expiry, release, retries, retention)."""
    engine = _build_engine(ctx, async_delivery=False)
    try:
        stats = engine.run_maintenance()
    finally:
        engine.stop()

    for key, value in stats.to_dict().items():
        click.echo(f"{key}: {value}")
    if stats.errors:
        for error in stats.errors:
            click.echo(click.style(error, fg="red"))
        sys.exit(1)


@cli.command()
@click.pass_context
def worker(ctx: click.Context) -> None:
    """
    Run the escalation and maintenance schedulers until interrupted.

    Stops cleanly on Ctrl+C or SIGTERM, draining queued deliveries.
    """
    engine = _build_engine(ctx)
    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    engine.start()
    click.echo("Worker running. Press Ctrl+C to stop")
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        click.echo("Stopping worker...")
        engine.stop(wait=True)


def main() -> None:
    """Main entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
