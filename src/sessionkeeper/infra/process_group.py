"""Named group of supervised child processes with captured output.

A name is reserved under the group lock before the process is started and
populated once it is running, so two concurrent adds under one name cannot
both succeed. Output pipes are drained by background tasks handed to the
caller-supplied ``spawn`` function (normally the server's task group), which
makes a failing copy loop fatal to the whole supervisor.

Dependencies: errors, infra.log_capture
Wired in: session/session.py → Session
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable, Coroutine, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sessionkeeper.errors import (
    DuplicateNameError,
    LaunchError,
    NotFoundError,
    ProcessExitError,
    StorageError,
)
from sessionkeeper.infra.log_capture import STDERR_FILENAME, STDOUT_FILENAME, pipe_sync

_log = logging.getLogger(__name__)

Spawn = Callable[[Coroutine[Any, Any, Any]], asyncio.Task[Any]]
"""Schedules a background coroutine, e.g. ``asyncio.TaskGroup.create_task``."""


@dataclass(frozen=True)
class CapturedOutput:
    """Live output streams of a process and the files they are copied to."""

    stdout: asyncio.StreamReader
    stderr: asyncio.StreamReader
    stdout_path: Path
    stderr_path: Path


@dataclass
class _Entry:
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    process: asyncio.subprocess.Process | None = None
    output: CapturedOutput | None = None


def _describe_exit(name: str, code: int) -> str | None:
    if code == 0:
        return None
    if code < 0:
        return f"{name} killed by signal {-code}"
    return f"{name} exited with status {code}"


class ProcessGroup:
    """Launch, pipe, and track named child processes."""

    def __init__(self, spawn: Spawn) -> None:
        self._spawn = spawn
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _reserve(self, name: str) -> _Entry:
        with self._lock:
            if name in self._entries:
                raise DuplicateNameError(f"process already exists: {name}")
            entry = _Entry()
            self._entries[name] = entry
            return entry

    def _release(self, name: str, entry: _Entry) -> None:
        with self._lock:
            if self._entries.get(name) is entry:
                del self._entries[name]
        entry.ready.set()

    async def add(
        self,
        name: str,
        program: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        log_dir: Path,
    ) -> asyncio.subprocess.Process:
        """Start *program* under *name*, copying its stdout/stderr into *log_dir*."""
        entry = self._reserve(name)
        stdout_path = log_dir / STDOUT_FILENAME
        stderr_path = log_dir / STDERR_FILENAME
        try:
            stdout_sink = stdout_path.open("wb")
            stderr_sink = stderr_path.open("wb")
        except OSError as exc:
            self._release(name, entry)
            raise StorageError(f"creating output files in {log_dir}: {exc}") from exc

        try:
            process = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else None,
            )
        except OSError as exc:
            stdout_sink.close()
            stderr_sink.close()
            self._release(name, entry)
            raise LaunchError(f"starting {program}: {exc}") from exc

        # PIPE guarantees both streams are present.
        assert process.stdout is not None and process.stderr is not None
        output = CapturedOutput(
            stdout=process.stdout,
            stderr=process.stderr,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )
        self._spawn(pipe_sync(process.stdout, stdout_sink))
        self._spawn(pipe_sync(process.stderr, stderr_sink))

        with self._lock:
            entry.process = process
            entry.output = output
        entry.ready.set()
        _log.info("Started %s (%s) as pid %d", name, program, process.pid)
        return process

    async def _lookup(self, name: str) -> _Entry:
        with self._lock:
            entry = self._entries.get(name)
        if entry is None:
            raise NotFoundError(f"process does not exist: {name}")
        await entry.ready.wait()
        if entry.process is None:
            raise NotFoundError(f"process does not exist: {name}")
        return entry

    async def output(self, name: str) -> CapturedOutput:
        """Return the live output streams for *name*.

        Waits for a reservation that is still starting up.
        """
        entry = await self._lookup(name)
        assert entry.output is not None
        return entry.output

    def pids(self) -> dict[str, int]:
        """Return a copy of the name → pid mapping for started processes."""
        with self._lock:
            return {
                name: entry.process.pid
                for name, entry in self._entries.items()
                if entry.process is not None
            }

    def running(self) -> bool:
        """Return True while any started process has not exited."""
        with self._lock:
            processes = [e.process for e in self._entries.values() if e.process is not None]
        return any(p.returncode is None for p in processes)

    def _signal_all(self, kill: bool) -> int:
        with self._lock:
            processes = [e.process for e in self._entries.values() if e.process is not None]
        signalled = 0
        for process in processes:
            if process.returncode is not None:
                continue
            with contextlib.suppress(ProcessLookupError):
                if kill:
                    process.kill()
                else:
                    process.terminate()
                signalled += 1
        return signalled

    def terminate(self) -> int:
        """Send SIGTERM to every running process; returns how many were signalled."""
        return self._signal_all(kill=False)

    def kill(self) -> int:
        """Send SIGKILL to every running process; returns how many were signalled."""
        return self._signal_all(kill=True)

    async def wait(self) -> None:
        """Block until every tracked process has exited.

        Processes added while waiting are waited for too. Raises
        ``ProcessExitError`` listing every unsuccessful exit.
        """
        waited: set[str] = set()
        failures: list[str] = []
        while True:
            with self._lock:
                pending = {n: e for n, e in self._entries.items() if n not in waited}
            if not pending:
                break
            for entry in pending.values():
                await entry.ready.wait()
            codes = await asyncio.gather(
                *(e.process.wait() for e in pending.values() if e.process is not None)
            )
            names = [n for n, e in pending.items() if e.process is not None]
            for name, code in zip(names, codes, strict=True):
                message = _describe_exit(name, code)
                if message is not None:
                    failures.append(message)
            waited.update(pending)
        if failures:
            raise ProcessExitError("; ".join(failures))
