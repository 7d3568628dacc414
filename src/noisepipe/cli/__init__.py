"""noisepipe command-line interface."""

from importlib.metadata import version

import click

_PACKAGE_NAME = "noisepipe"


def _get_version() -> str:
    """Return the installed package version string."""
    return version(_PACKAGE_NAME)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(message="%(version)s", package_name=_PACKAGE_NAME)
def cli() -> None:
    """Noise measurement ingestion and aggregation tool."""


@cli.command("version")
def version_cmd() -> None:
    """Print the version number."""
    click.echo(_get_version())


# Register subcommands (must be after cli is defined)
from . import aggregate as _aggregate  # noqa: E402, F401
from . import cache as _cache  # noqa: E402, F401
from . import cleanup as _cleanup  # noqa: E402, F401
from . import import_cmd as _import_cmd  # noqa: E402, F401
from . import run as _run  # noqa: E402, F401
from . import status as _status  # noqa: E402, F401
