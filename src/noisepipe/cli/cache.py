"""Cache command group."""

import click

from ..cache import IntelligentCache
from . import cli
from .logger import configure_logging
from .options import common_options, load_cli_config


@cli.group()
def cache() -> None:
    """Manage the disk cache."""


@cache.command()
@common_options
def sweep(config_file: str | None, data_dir: str | None, verbose: bool) -> None:
    """Remove the expired or unreadable disk cache entries."""
    configure_logging(verbose)
    config = load_cli_config(config_file, data_dir)
    removed = IntelligentCache(config.cache_dir()).sweep()
    click.echo(f"Removed {removed} expired cache entries.")


@cache.command()
@common_options
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
def clear(config_file: str | None, data_dir: str | None, verbose: bool, yes: bool) -> None:
    """Remove every disk cache entry."""
    configure_logging(verbose)
    config = load_cli_config(config_file, data_dir)
    directory = config.cache_dir()
    if not yes:
        click.confirm(f"Remove every entry below {directory}?", abort=True)
    IntelligentCache(directory).clear()
    click.echo("Cache cleared.")
