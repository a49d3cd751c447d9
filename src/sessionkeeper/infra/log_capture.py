"""Durable capture of child process output and line-oriented reads back."""

from __future__ import annotations

import asyncio
import logging
import os
import string
from pathlib import Path
from typing import BinaryIO

from sessionkeeper.errors import StorageError

_log = logging.getLogger(__name__)

STDOUT_FILENAME = ".stdout"
STDERR_FILENAME = ".stderr"

_CHUNK_SIZE: int = 4096
_PADDING = "\x00" + string.whitespace


def _write_durably(sink: BinaryIO, data: bytes) -> None:
    sink.write(data)
    sink.flush()
    os.fsync(sink.fileno())


async def pipe_sync(source: asyncio.StreamReader, sink: BinaryIO) -> int:
    """Copy *source* into *sink* until EOF, syncing to disk after every chunk.

    Takes ownership of *sink* and closes it. Returns the number of bytes copied.
    """
    copied = 0
    try:
        while True:
            data = await source.read(_CHUNK_SIZE)
            if not data:
                break
            try:
                await asyncio.to_thread(_write_durably, sink, data)
            except OSError as exc:
                raise StorageError(f"writing output to {sink.name}: {exc}") from exc
            copied += len(data)
    finally:
        sink.close()
    _log.debug("Output capture for %s finished after %d bytes", sink.name, copied)
    return copied


def clean_line(raw: str) -> str:
    """Strip NUL padding and surrounding whitespace from a captured line."""
    return raw.strip(_PADDING)


def read_log_lines(path: Path) -> list[str]:
    """Return the non-blank lines of a capture file, in order."""
    try:
        with path.open("r", encoding="utf-8", errors="replace") as fh:
            lines = [clean_line(line) for line in fh]
    except OSError as exc:
        raise StorageError(f"reading {path}: {exc}") from exc
    return [line for line in lines if line]
