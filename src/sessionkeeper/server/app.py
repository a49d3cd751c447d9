"""Supervisor: owns the task group, the OSC endpoint, and the session registry.

Every background activity (per-request handlers, output-copy loops) runs in
one ``asyncio.TaskGroup``; an unexpected failure in any of them cancels the
rest and ends :meth:`SessionManager.run` with an ``ExceptionGroup``.

Dependencies: config, errors, server.dispatcher, server.handshake,
server.transport, session
Wired in: cli.py → serve
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from sessionkeeper.config import ServerConfig
from sessionkeeper.errors import ProcessExitError
from sessionkeeper.infra.process_group import ProcessGroup
from sessionkeeper.server.dispatcher import Dispatcher
from sessionkeeper.server.handshake import AnnounceCoordinator
from sessionkeeper.server.transport import OscTransport
from sessionkeeper.session import SessionRegistry

_log = logging.getLogger(__name__)


class SessionManager:
    """One running server instance."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.ready = asyncio.Event()
        self.url: str | None = None
        self.sessions: SessionRegistry | None = None
        self._stop = asyncio.Event()
        self._tasks: asyncio.TaskGroup | None = None

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        if self._tasks is None:
            coro.close()
            raise RuntimeError("session manager is not running")
        return self._tasks.create_task(coro)

    def stop(self) -> None:
        """Ask :meth:`run` to shut down gracefully."""
        if not self._stop.is_set():
            _log.info("Shutdown requested")
        self._stop.set()

    async def run(self) -> None:
        """Serve until :meth:`stop` is called or a background task fails.

        Errors loading the sessions home propagate unchanged; everything
        after that surfaces as an ``ExceptionGroup`` from the task group.
        """
        sessions = SessionRegistry.load(self.config.home, spawn=self._spawn)
        handshakes = AnnounceCoordinator()
        transport = OscTransport(self.config.host, self.config.port)
        dispatcher = Dispatcher(
            self.config,
            sessions,
            handshakes,
            transport,
            spawn=self._spawn,
            on_quit=self.stop,
        )
        self.sessions = sessions
        async with asyncio.TaskGroup() as tasks:
            self._tasks = tasks
            try:
                await transport.start(dispatcher.addresses, dispatcher.submit)
                self.url = transport.url
                _log.info("Session manager serving %s from %s", self.url, self.config.home)
                self.ready.set()
                await self._stop.wait()
            finally:
                await self._shutdown(sessions, handshakes, transport)
        self._tasks = None
        _log.info("Session manager stopped")

    async def _shutdown(
        self,
        sessions: SessionRegistry,
        handshakes: AnnounceCoordinator,
        transport: OscTransport,
    ) -> None:
        handshakes.cancel_all()
        # Let the cancelled add handlers send their error replies.
        await asyncio.sleep(0)
        transport.close()

        groups = sessions.process_groups()
        signalled = sum(group.terminate() for group in groups)
        if signalled:
            _log.info("Terminated %d child process(es)", signalled)
        try:
            async with asyncio.timeout(self.config.shutdown_grace):
                await _wait_all(groups)
        except TimeoutError:
            killed = sum(group.kill() for group in groups)
            _log.warning(
                "Killed %d child process(es) still running after %.1fs",
                killed,
                self.config.shutdown_grace,
            )
            await _wait_all(groups)
        sessions.close()


async def _wait_all(groups: list[ProcessGroup]) -> None:
    results = await asyncio.gather(*(group.wait() for group in groups), return_exceptions=True)
    for result in results:
        if isinstance(result, ProcessExitError):
            _log.warning("Child exits: %s", result)
        elif isinstance(result, BaseException):
            raise result
