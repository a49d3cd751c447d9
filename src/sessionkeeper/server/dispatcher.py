"""Routes inbound OSC requests to sessions and the handshake coordinator.

Each request runs as its own task so a blocked add never stalls the
endpoint. Every request gets exactly one reply (success or ``/error``),
except messages that are notifications by nature (``/reply``, dirty/clean).

Dependencies: config, errors, models, server.handshake, session
Wired in: server/app.py → SessionManager.run()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from sessionkeeper.config import ServerConfig
from sessionkeeper.errors import (
    MalformedRequestError,
    NoSessionOpenError,
    SessionManagerError,
)
from sessionkeeper.infra.process_group import Spawn
from sessionkeeper.models import (
    ADDRESS_ADD,
    ADDRESS_ANNOUNCE,
    ADDRESS_CLIENT_CLEAN,
    ADDRESS_CLIENT_DIRTY,
    ADDRESS_CLIENT_LOGS,
    ADDRESS_LIST_CLIENTS,
    ADDRESS_LIST_SESSIONS,
    ADDRESS_NEW_SESSION,
    ADDRESS_OPEN_SESSION,
    ADDRESS_PING,
    ADDRESS_PONG,
    ADDRESS_QUIT,
    ADDRESS_REMOVE_SESSION,
    ADDRESS_REPLY,
    CAP_SERVER_CONTROL,
    Reply,
    Request,
    Sender,
    error_reply,
    format_capabilities,
    success_reply,
)
from sessionkeeper.server.handshake import AnnounceCoordinator, PendingHandshake
from sessionkeeper.session import Session, SessionRegistry

_log = logging.getLogger(__name__)

SERVER_CAPABILITIES: frozenset[str] = frozenset({CAP_SERVER_CONTROL})

Handler = Callable[[Request], Awaitable[Reply | None]]


class ReplySink(Protocol):
    """Where replies go; implemented by ``OscTransport``."""

    @property
    def url(self) -> str: ...

    def send(self, to: Sender, reply: Reply) -> None: ...


class Dispatcher:
    """Address → handler routing for one server instance."""

    def __init__(
        self,
        config: ServerConfig,
        sessions: SessionRegistry,
        handshakes: AnnounceCoordinator,
        sink: ReplySink,
        *,
        spawn: Spawn,
        on_quit: Callable[[], None],
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._handshakes = handshakes
        self._sink = sink
        self._spawn = spawn
        self._on_quit = on_quit
        self._routes: dict[str, tuple[str, Handler]] = {
            ADDRESS_ADD: ("adding client", self.add),
            ADDRESS_ANNOUNCE: ("announcing client", self.announce),
            ADDRESS_NEW_SESSION: ("creating new session", self.new_session),
            ADDRESS_REMOVE_SESSION: ("removing session", self.remove_session),
            ADDRESS_OPEN_SESSION: ("opening session", self.open_session),
            ADDRESS_LIST_CLIENTS: ("listing clients", self.list_clients),
            ADDRESS_LIST_SESSIONS: ("listing sessions", self.list_sessions),
            ADDRESS_CLIENT_LOGS: ("getting client logs", self.client_logs),
            ADDRESS_CLIENT_DIRTY: ("marking client dirty", self.client_dirty),
            ADDRESS_CLIENT_CLEAN: ("marking client clean", self.client_clean),
            ADDRESS_QUIT: ("quitting", self.quit),
            ADDRESS_PING: ("ping", self.ping),
            ADDRESS_REPLY: ("client reply", self.client_reply),
        }

    @property
    def addresses(self) -> list[str]:
        return list(self._routes)

    def submit(self, request: Request) -> None:
        """Handle *request* in a new background task."""
        self._spawn(self.handle(request))

    async def handle(self, request: Request) -> None:
        """Run the handler for *request* and send its reply."""
        _log.debug("%s from %s:%d %r", request.address, *request.sender, request.arguments)
        route = self._routes.get(request.address)
        try:
            if route is None:
                raise MalformedRequestError(f"unknown address {request.address}")
            operation, handler = route
            try:
                reply = await handler(request)
            except SessionManagerError as exc:
                raise exc.wrap(operation) from exc
        except SessionManagerError as exc:
            _log.info("%s failed: %s", request.address, exc)
            reply = error_reply(request.address, exc)
        if reply is not None:
            self._sink.send(request.sender, reply)

    def _current_session(self) -> Session:
        session = self._sessions.current()
        if session is None:
            raise NoSessionOpenError("no current session")
        return session

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def add(self, request: Request) -> Reply:
        """Spawn a client and reply once it has announced itself."""
        session = self._current_session()
        handshake = self._handshakes.begin(session.name)
        try:
            name = await session.spawn_from(request, self._sink.url)
        except BaseException:
            self._handshakes.abandon(handshake)
            raise
        self._handshakes.spawned(handshake, name, session.processes.pids()[name])
        return await self._handshakes.wait(handshake, self._config.announce_timeout)

    def _handshake_for(self, request: Request) -> PendingHandshake | None:
        if len(request.arguments) != 6:
            return None
        try:
            pid = request.read_int32(5, "pid")
        except MalformedRequestError:
            return None
        return self._handshakes.match(pid)

    async def announce(self, request: Request) -> None:
        """Register an announcing client and wake the add request that spawned it."""
        handshake = self._handshake_for(request)
        session = None
        if handshake is not None:
            session = self._sessions.get(handshake.session_name)
        session = session or self._current_session()

        session.announce(request)
        reply = success_reply(
            ADDRESS_ANNOUNCE,
            self._config.server_name,
            format_capabilities(SERVER_CAPABILITIES),
        )
        self._sink.send(request.sender, reply)
        if handshake is not None:
            self._handshakes.deliver(handshake, reply)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def new_session(self, request: Request) -> Reply:
        request.expect_arity(1)
        name = request.read_string(0, "session name")
        session = self._sessions.new(name)
        return success_reply(request.address, f"created new session {session.name}")

    async def remove_session(self, request: Request) -> Reply:
        request.expect_arity(1)
        name = request.read_string(0, "session name")
        await asyncio.to_thread(self._sessions.remove, name)
        return success_reply(request.address, f"removed session {name}")

    async def open_session(self, request: Request) -> Reply:
        request.expect_arity(1)
        name = request.read_string(0, "session name")
        self._sessions.open(name)
        return success_reply(request.address, f"opened session {name}")

    async def list_sessions(self, request: Request) -> Reply:
        await asyncio.to_thread(self._sessions.read)
        names, current = self._sessions.listing()
        return success_reply(request.address, len(names), current, *names)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    async def list_clients(self, request: Request) -> Reply:
        clients = self._current_session().clients.snapshot()
        payload: list[str | int] = [len(clients)]
        for pid in sorted(clients):
            client = clients[pid]
            payload.extend(
                (
                    client.application_name,
                    format_capabilities(client.capabilities),
                    client.executable_name,
                    client.major,
                    client.minor,
                    pid,
                )
            )
        return success_reply(request.address, *payload)

    async def client_logs(self, request: Request) -> Reply:
        request.expect_arity(2)
        client_name = request.read_string(0, "client name")
        stream = request.read_int32(1, "stream selector")
        session = self._current_session()
        return await asyncio.to_thread(session.logs, client_name, stream)

    def _mark(self, request: Request, dirty: bool) -> None:
        for session in self._sessions.sessions():
            if session.clients.set_dirty(request.sender, dirty) is not None:
                _log.info(
                    "Client at %s:%d in session %s is %s",
                    *request.sender,
                    session.name,
                    "dirty" if dirty else "clean",
                )
                return
        _log.debug("Dirty-state update from unknown client %s:%d", *request.sender)

    async def client_dirty(self, request: Request) -> None:
        self._mark(request, dirty=True)

    async def client_clean(self, request: Request) -> None:
        self._mark(request, dirty=False)

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    async def ping(self, request: Request) -> Reply:
        return Reply(address=ADDRESS_PONG)

    async def client_reply(self, request: Request) -> None:
        _log.debug("Reply from %s:%d: %r", *request.sender, request.arguments)

    async def quit(self, request: Request) -> Reply:
        self._on_quit()
        return success_reply(request.address, "shutting down")
