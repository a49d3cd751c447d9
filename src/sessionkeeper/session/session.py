"""A single persistent session: directory, announced clients, and processes.

Layout on disk::

    <home>/<session>/<client>/.stdout
    <home>/<session>/<client>/.stderr

Dependencies: errors, infra, models, session.clients, validation
Wired in: session/registry.py → SessionRegistry, server/dispatcher.py
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

from sessionkeeper.errors import InvalidArgumentError, NotFoundError
from sessionkeeper.infra.fs import ensure_dir
from sessionkeeper.infra.log_capture import STDERR_FILENAME, STDOUT_FILENAME, read_log_lines
from sessionkeeper.infra.process_group import ProcessGroup, Spawn
from sessionkeeper.models import (
    ADDRESS_CLIENT_LOGS,
    Client,
    Reply,
    Request,
    parse_capabilities,
    success_reply,
)
from sessionkeeper.session.clients import ClientRegistry
from sessionkeeper.validation import validate_name

_log = logging.getLogger(__name__)

ANNOUNCE_ENV_VAR = "NSM_URL"
STDOUT_STREAM = 1
STDERR_STREAM = 2


@dataclass(frozen=True)
class LogPaths:
    """Capture files of one client."""

    stdout: Path
    stderr: Path


class Session:
    """One addressable unit of work, identified by its directory."""

    def __init__(self, path: Path, *, spawn: Spawn) -> None:
        self.path = path
        self.clients = ClientRegistry()
        self.processes = ProcessGroup(spawn)
        self._log_paths: dict[str, LogPaths] = {}
        self._log_lock = threading.Lock()
        ensure_dir(path)
        self._index_existing_logs()

    @property
    def name(self) -> str:
        return self.path.name

    def __repr__(self) -> str:
        return f"Session({str(self.path)!r})"

    def _index_existing_logs(self) -> None:
        """Pick up capture files left by clients of earlier runs."""
        found: dict[str, LogPaths] = {}
        for child in self.path.iterdir():
            stdout = child / STDOUT_FILENAME
            stderr = child / STDERR_FILENAME
            if child.is_dir() and (stdout.is_file() or stderr.is_file()):
                found[child.name] = LogPaths(stdout=stdout, stderr=stderr)
        with self._log_lock:
            self._log_paths.update(found)

    async def spawn_from(self, request: Request, announce_url: str) -> str:
        """Start the client described by an add request; returns the client name.

        The client is only registered once it announces itself.
        """
        request.expect_arity(2)
        name = validate_name(request.read_string(0, "client name"), "client name")
        program = request.read_string(1, "executable path")

        client_dir = ensure_dir(self.path / name)
        env = dict(os.environ)
        env[ANNOUNCE_ENV_VAR] = announce_url

        await self.processes.add(name, program, env=env, log_dir=client_dir)
        output = await self.processes.output(name)
        with self._log_lock:
            self._log_paths[name] = LogPaths(stdout=output.stdout_path, stderr=output.stderr_path)
        return name

    def announce(self, request: Request) -> Client:
        """Register the client described by an announce message."""
        request.expect_arity(6)
        client = Client(
            application_name=request.read_string(0, "application name"),
            capabilities=parse_capabilities(request.read_string(1, "capabilities")),
            executable_name=request.read_string(2, "executable name"),
            major=request.read_int32(3, "api major version"),
            minor=request.read_int32(4, "api minor version"),
            pid=request.read_int32(5, "pid"),
            address=request.sender,
        )
        self.clients.insert(client.pid, client)
        _log.info(
            "Client %s announced in session %s (pid=%d, api %d.%d)",
            client.application_name,
            self.name,
            client.pid,
            client.major,
            client.minor,
        )
        return client

    def log_paths(self, client_name: str) -> LogPaths | None:
        with self._log_lock:
            return self._log_paths.get(client_name)

    def logs(self, client_name: str, stream: int) -> Reply:
        """Return the captured stdout (1) or stderr (2) lines of a client.

        Reads from disk; call it off the event loop.
        """
        if stream not in (STDOUT_STREAM, STDERR_STREAM):
            raise InvalidArgumentError(
                f"stream selector must be either {STDOUT_STREAM} or {STDERR_STREAM}, got {stream}"
            )
        paths = self.log_paths(client_name)
        if paths is None:
            raise NotFoundError(f"client does not exist: {client_name}")
        path = paths.stdout if stream == STDOUT_STREAM else paths.stderr
        _log.debug("Reading logs for %s from %s", client_name, path)
        lines = read_log_lines(path)
        return success_reply(ADDRESS_CLIENT_LOGS, client_name, len(lines), *lines)

    def dirty(self) -> bool:
        """Report whether removing the session would lose unsaved state.

        A session is dirty while at least one of its processes is still
        running and at least one announced client last reported unsaved
        changes (``/nsm/client/is_dirty`` without a later ``is_clean``).
        """
        return self.clients.any_dirty() and self.processes.running()
