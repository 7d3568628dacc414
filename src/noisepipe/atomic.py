"""Helpers for atomically replacing small JSON files."""

from __future__ import annotations

import json
import os
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any


def write_json_atomic(path: Path, data: Any, *, durable: bool = False) -> Path:
    """
    Write `data` as JSON to `path`, replacing any previous content atomically.

    Readers either see the old file or the new one, never a partial write.

    Args:
        path: destination file (parent directories are created).
        data: JSON-serializable object.
        durable: when True, flush and fsync the file before replacing it
            so the content survives a crash of the whole machine.

    Returns:
        The destination path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # The temporary directory goes away even if the file inside it
    # was never moved into place
    with TemporaryDirectory(dir=path.parent) as tmp_dir:
        tmp_file = Path(tmp_dir) / path.name
        with tmp_file.open("w") as filep:
            json.dump(data, filep, indent=2)
            filep.write("\n")
            if durable:
                filep.flush()
                os.fsync(filep.fileno())
        # Windows readers without FILE_SHARE_DELETE can make this fail;
        # retrying is not needed on the platforms we deploy to.
        os.replace(tmp_file, path)

    return path
