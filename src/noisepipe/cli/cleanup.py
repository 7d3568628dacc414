"""Cleanup command."""

import click
from rich.console import Console
from rich.table import Table

from ..services import Services
from . import cli
from .logger import configure_logging
from .options import common_options, load_cli_config


@cli.command()
@click.option("--no-optimize", is_flag=True, help="Skip ANALYZE and PRAGMA optimize")
@common_options
def cleanup(no_optimize: bool, config_file: str | None, data_dir: str | None, verbose: bool) -> None:
    """Apply the retention policies and optimize the database."""
    configure_logging(verbose)
    config = load_cli_config(config_file, data_dir)
    services = Services.from_config(config, watch=False)
    services.store.ensure_schema()
    services.engine.ensure_default_policies()
    try:
        report = services.engine.run_maintenance(with_refresh=False, with_optimize=not no_optimize)
    finally:
        services.store.close()

    table = Table(title="Retention cleanup")
    table.add_column("Table")
    table.add_column("Deleted", justify="right")
    result = report.cleanup
    if result is not None:
        for name, deleted in sorted(result.deleted.items()):
            table.add_row(name, str(deleted))
        for name, reason in sorted(result.failed.items()):
            table.add_row(name, f"[red]failed: {reason}[/]")
    Console().print(table)
    if result is not None and result.vacuumed:
        click.echo("Database vacuumed.")
    for step, reason in sorted(report.errors.items()):
        click.echo(f"{step} failed: {reason}", err=True)
    if report.errors or (result is not None and result.failed):
        raise SystemExit(1)
