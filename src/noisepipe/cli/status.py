"""Status command."""

import json

import click
from rich.console import Console
from rich.table import Table

from . import cli
from .options import common_options, load_cli_config


@cli.command()
@common_options
def status(config_file: str | None, data_dir: str | None, verbose: bool) -> None:
    """Show the last heartbeat written by `noisepipe run`."""
    config = load_cli_config(config_file, data_dir)
    path = config.heartbeat_path()
    try:
        heartbeat = json.loads(path.read_text())
    except FileNotFoundError as exc:
        raise click.ClickException(f"No heartbeat found at {path}: is `noisepipe run` running?") from exc
    except ValueError as exc:
        raise click.ClickException(f"Invalid heartbeat {path}: {exc}") from exc

    watcher = heartbeat.get("watcher", {})
    stats = heartbeat.get("stats", {})

    table = Table(title=f"noisepipe status at {heartbeat.get('timestamp', '?')}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    rows = [
        ("Active jobs", heartbeat.get("active_jobs")),
        ("Queued jobs", heartbeat.get("queued_jobs")),
        ("Last file processed", heartbeat.get("last_file_processed")),
        ("Completed jobs", stats.get("completed_jobs")),
        ("Failed jobs", stats.get("failed_jobs")),
        ("Rows processed", stats.get("total_processed")),
        ("Rows skipped", stats.get("total_skipped")),
        ("Files submitted by watcher", watcher.get("files_submitted")),
        ("Watcher errors", watcher.get("errors")),
        ("Watcher alive", watcher.get("observer_alive")),
        ("Last activity", watcher.get("last_activity")),
    ]
    for name, value in rows:
        table.add_row(name, "-" if value is None else str(value))
    Console().print(table)
