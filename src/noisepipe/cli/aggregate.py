"""Aggregate command."""

import click
from rich.console import Console
from rich.table import Table

from ..models import Granularity
from ..services import Services
from . import cli
from .logger import configure_logging
from .options import common_options, load_cli_config


@cli.command()
@click.option(
    "-g",
    "--granularity",
    "granularities",
    multiple=True,
    type=click.Choice([g.value for g in Granularity]),
    help="Granularity to refresh (repeatable, default: all)",
)
@common_options
def aggregate(
    granularities: tuple[str, ...],
    config_file: str | None,
    data_dir: str | None,
    verbose: bool,
) -> None:
    """Recompute the rollups over their trailing windows."""
    configure_logging(verbose)
    config = load_cli_config(config_file, data_dir)
    services = Services.from_config(config, watch=False)
    services.store.ensure_schema()
    try:
        result = services.engine.refresh(granularities or None)
    finally:
        services.store.close()

    table = Table(title="Aggregation")
    table.add_column("Granularity")
    table.add_column("Buckets", justify="right")
    for granularity, count in result.buckets.items():
        table.add_row(granularity.value, str(count))
    Console().print(table)
    click.echo(f"Stations: {', '.join(result.stations) or '-'} ({result.duration_ms:.0f}ms)")
