"""Options and helpers shared by the commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from typing import Any, TypeVar

import click

from ..config import Config, load_config
from ..errors import ConfigError

F = TypeVar("F", bound=Callable[..., Any])


def common_options(func: F) -> F:
    """Add the -c/--config, -d/--dir and -v/--verbose options."""
    func = click.option("-v", "--verbose", is_flag=True, default=False, help="Verbose mode.")(func)
    func = click.option(
        "-d", "--dir", "data_dir", default=None, help="Data directory (default: .noisepipe)"
    )(func)
    func = click.option(
        "-c",
        "--config",
        "config_file",
        default=None,
        metavar="CONFIG",
        help="Path to YAML config file (default: built-in defaults)",
    )(func)
    return func


def load_cli_config(config_file: str | None, data_dir: str | None) -> Config:
    """Load the configuration, letting -d/--dir override the data directory."""
    try:
        config = load_config(config_file)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if data_dir is not None:
        config = replace(config, data_dir=data_dir)
    return config
