"""Logging helpers for the noisepipe CLI."""

from __future__ import annotations

import logging
import os
import sys
from typing import Final

import colorlog

LOG_COLORS: Final[dict[str, str]] = {
    "DEBUG": "bold_cyan",
    "INFO": "bold_green",
    "WARNING": "bold_yellow",
    "ERROR": "bold_red",
    "CRITICAL": "bold_red,bg_white",
}

LOG_FORMAT: Final[str] = "[%(asctime)s] <%(name)s> %(levelname)s: %(message)s"

DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that flood DEBUG output (one line per file event or lock)
NOISY_LOGGERS: Final[tuple[str, ...]] = ("watchdog", "filelock", "urllib3")


def _use_color() -> bool:
    if os.getenv("NO_COLOR") is not None:
        return False
    return sys.stderr.isatty()


def _level(verbose: bool, quiet: bool) -> int:
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    return logging.INFO


def configure_logging(verbose: bool, *, quiet: bool = False) -> None:
    """
    Configure the root logger for the CLI.

    We use colorlog when stderr is a terminal and NO_COLOR is unset,
    plain logging otherwise. `verbose` wins over `quiet`.
    """
    level = _level(verbose, quiet)
    handler = logging.StreamHandler()
    if _use_color():
        handler.setFormatter(
            colorlog.ColoredFormatter(
                fmt="%(log_color)s[%(asctime)s] <%(name)s> %(levelname)s:%(reset)s %(message)s",
                log_colors=LOG_COLORS,
                datefmt=DATE_FORMAT,
            )
        )
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))
