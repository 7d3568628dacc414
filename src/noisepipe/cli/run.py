"""Run command."""

import signal
import threading

import click

from ..services import Services
from . import cli
from .logger import configure_logging
from .options import common_options, load_cli_config


@cli.command()
@common_options
def run(config_file: str | None, data_dir: str | None, verbose: bool) -> None:
    """Watch the station directories and run the scheduled jobs until interrupted."""
    configure_logging(verbose)
    config = load_cli_config(config_file, data_dir)

    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stopped.set())

    with Services.from_config(config):
        try:
            while not stopped.wait(1.0):
                pass
        except KeyboardInterrupt:
            click.echo("Interrupted, shutting down...", err=True)
