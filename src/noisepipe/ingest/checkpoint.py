"""Module managing the `<file>.meta.json` checkpoint side-cars."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final

from ..atomic import write_json_atomic

log = logging.getLogger("ingest/checkpoint")

CHECKPOINT_SUFFIX: Final[str] = ".meta.json"

LOCK_SUFFIX: Final[str] = ".lock"

CHECKSUM_BYTES: Final[int] = 4096


@dataclass(frozen=True, kw_only=True)
class Checkpoint:
    """
    Resume point of a source file.

    Attributes:
        last_line: number of data rows (header excluded) already handled
        last_processed_at: ISO-8601 time of the last write, if any
        checksum: "<n>:<sha256>" of the first n bytes of the file, used
            to notice that the file was rewritten
    """

    last_line: int = 0
    last_processed_at: str | None = None
    checksum: str | None = None


def checkpoint_path(file_path: Path) -> Path:
    """Return the path of the checkpoint side-car of `file_path`."""
    return file_path.with_name(file_path.name + CHECKPOINT_SUFFIX)


def lock_path(file_path: Path) -> Path:
    """Return the path of the lock file guarding `file_path`."""
    return file_path.with_name(file_path.name + LOCK_SUFFIX)


def read_checkpoint(file_path: Path) -> Checkpoint:
    """
    Read the checkpoint of `file_path`.

    A missing checkpoint means "start from the beginning". An unreadable
    or malformed one is logged and treated the same way: re-importing is
    safe because the store upserts by (station, time).
    """
    path = checkpoint_path(file_path)
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return Checkpoint()
    except (OSError, ValueError) as exc:
        log.warning("reading checkpoint %s... failure: %s", path, exc)
        return Checkpoint()

    last_line = data.get("last_line") if isinstance(data, dict) else None
    if not isinstance(last_line, int) or isinstance(last_line, bool) or last_line < 0:
        log.warning("reading checkpoint %s... failure: invalid last_line", path)
        return Checkpoint()

    return Checkpoint(
        last_line=last_line,
        last_processed_at=data.get("last_processed_at"),
        checksum=data.get("checksum"),
    )


def write_checkpoint(
    file_path: Path,
    last_line: int,
    *,
    durable: bool = False,
    checksum: str | None = None,
) -> Checkpoint:
    """
    Persist the checkpoint of `file_path`.

    The checkpoint never moves backwards: if the stored value is already
    larger we keep it. Use `reset_checkpoint` to start over.

    Args:
        file_path: the source file.
        last_line: number of data rows handled so far.
        durable: fsync before the atomic replace.
        checksum: replaces the stored checksum when given.

    Returns:
        The checkpoint that is now on disk.
    """
    previous = read_checkpoint(file_path)
    checkpoint = Checkpoint(
        last_line=max(previous.last_line, last_line),
        last_processed_at=datetime.now().isoformat(timespec="seconds"),
        checksum=checksum if checksum is not None else previous.checksum,
    )
    write_json_atomic(
        checkpoint_path(file_path),
        {
            "last_line": checkpoint.last_line,
            "last_processed_at": checkpoint.last_processed_at,
            "checksum": checkpoint.checksum,
        },
        durable=durable,
    )
    return checkpoint


def reset_checkpoint(file_path: Path) -> None:
    """Remove the checkpoint of `file_path` so the next run starts over."""
    checkpoint_path(file_path).unlink(missing_ok=True)


def file_checksum(file_path: Path, size: int | None = None) -> str:
    """
    Return the checksum of the first `size` bytes of `file_path`.

    The default size is min(file size, CHECKSUM_BYTES). Appending rows to
    a file keeps the checksum of an existing prefix unchanged.
    """
    with file_path.open("rb") as filep:
        head = filep.read(CHECKSUM_BYTES if size is None else size)
    return f"{len(head)}:{hashlib.sha256(head).hexdigest()}"


def is_stale(checkpoint: Checkpoint, file_path: Path, data_rows: int) -> bool:
    """
    Return whether `checkpoint` no longer describes `file_path`.

    That is the case when the file now has fewer data rows than the
    checkpoint claims, or when the bytes covered by the stored checksum
    have changed.
    """
    if checkpoint.last_line > data_rows:
        return True
    if not checkpoint.checksum:
        return False
    size, _, _ = checkpoint.checksum.partition(":")
    try:
        expected_size = int(size)
    except ValueError:
        log.warning("reading checkpoint of %s... invalid checksum", file_path)
        return True
    return file_checksum(file_path, expected_size) != checkpoint.checksum
