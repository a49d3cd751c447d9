"""Filesystem helpers for session and client directories."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from sessionkeeper.errors import StorageError

DIR_PERMS = 0o755


def ensure_dir(path: Path) -> Path:
    """Create *path* (and parents) if it does not exist yet."""
    try:
        path.mkdir(mode=DIR_PERMS, parents=True, exist_ok=True)
    except OSError as exc:
        raise StorageError(f"creating directory {path}: {exc}") from exc
    if not path.is_dir():
        raise StorageError(f"{path} exists and is not a directory")
    return path


def write_atomic(path: Path, content: str) -> None:
    """Replace *path* with *content* so readers never see a partial file."""
    try:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise StorageError(f"writing {path}: {exc}") from exc
