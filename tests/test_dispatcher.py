"""Protocol-level tests for request routing, replies, and the add/announce flow."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from conftest import ANNOUNCER, CONTROLLER, FakeSink, TaskCollector, make_request

from sessionkeeper.config import ServerConfig
from sessionkeeper.models import (
    ADDRESS_ADD,
    ADDRESS_ANNOUNCE,
    ADDRESS_CLIENT_CLEAN,
    ADDRESS_CLIENT_DIRTY,
    ADDRESS_CLIENT_LOGS,
    ADDRESS_ERROR,
    ADDRESS_LIST_CLIENTS,
    ADDRESS_LIST_SESSIONS,
    ADDRESS_NEW_SESSION,
    ADDRESS_OPEN_SESSION,
    ADDRESS_PING,
    ADDRESS_PONG,
    ADDRESS_QUIT,
    ADDRESS_REMOVE_SESSION,
    ADDRESS_REPLY,
    Reply,
    Sender,
)
from sessionkeeper.server.dispatcher import Dispatcher
from sessionkeeper.server.handshake import AnnounceCoordinator
from sessionkeeper.session import SessionRegistry

_ANNOUNCE_REPLY = Reply(
    address=ADDRESS_REPLY,
    arguments=(ADDRESS_ANNOUNCE, "sessionkeeper", ":server-control:"),
)


class Harness:
    """A dispatcher wired to a fake sink and a temporary sessions home."""

    def __init__(self, config: ServerConfig, spawner: TaskCollector, sink: FakeSink) -> None:
        self.sink = sink
        self.spawner = spawner
        self.quit_requests = 0
        self.sessions = SessionRegistry.load(config.home, spawn=spawner)
        self.handshakes = AnnounceCoordinator()
        self.dispatcher = Dispatcher(
            config,
            self.sessions,
            self.handshakes,
            sink,
            spawn=spawner,
            on_quit=self._quit,
        )

    def _quit(self) -> None:
        self.quit_requests += 1

    async def call(self, address: str, *args: object, sender: Sender = CONTROLLER) -> Reply:
        """Handle one request and return the single reply it produced."""
        before = len(self.sink.sent)
        await self.dispatcher.handle(make_request(address, *args, sender=sender))
        sent = self.sink.sent[before:]
        assert len(sent) == 1, sent
        to, reply = sent[0]
        assert to == sender
        return reply

    async def notify(self, address: str, *args: object, sender: Sender = CONTROLLER) -> None:
        """Handle a request that must not be answered."""
        before = len(self.sink.sent)
        await self.dispatcher.handle(make_request(address, *args, sender=sender))
        assert self.sink.sent[before:] == []


@pytest.fixture()
def harness(config: ServerConfig, spawner: TaskCollector, sink: FakeSink) -> Harness:
    return Harness(config, spawner, sink)


def _error(address: str, code: int, message: str) -> Reply:
    return Reply(address=ADDRESS_ERROR, arguments=(address, code, message))


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_unknown_address_is_malformed(harness: Harness) -> None:
    reply = await harness.call("/nsm/server/frobnicate", 1)
    assert reply == _error("/nsm/server/frobnicate", -1, "unknown address /nsm/server/frobnicate")


@pytest.mark.asyncio()
async def test_ping(harness: Harness) -> None:
    assert await harness.call(ADDRESS_PING) == Reply(address=ADDRESS_PONG)


@pytest.mark.asyncio()
async def test_client_reply_is_only_logged(harness: Harness) -> None:
    await harness.notify(ADDRESS_REPLY, "/nsm/client/save", "saved")


@pytest.mark.asyncio()
async def test_quit_requests_shutdown(harness: Harness) -> None:
    reply = await harness.call(ADDRESS_QUIT)
    assert reply.arguments == (ADDRESS_QUIT, "shutting down")
    assert harness.quit_requests == 1


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_new_session_then_list(harness: Harness, home: Path) -> None:
    reply = await harness.call(ADDRESS_NEW_SESSION, "demo")
    assert reply.arguments == (ADDRESS_NEW_SESSION, "created new session demo")
    assert (home / "demo").is_dir()

    reply = await harness.call(ADDRESS_LIST_SESSIONS)
    assert reply.arguments == (ADDRESS_LIST_SESSIONS, 1, 0, "demo")


@pytest.mark.asyncio()
async def test_duplicate_session_is_wrapped(harness: Harness) -> None:
    await harness.call(ADDRESS_NEW_SESSION, "demo")
    reply = await harness.call(ADDRESS_NEW_SESSION, "demo")
    assert reply == _error(
        ADDRESS_NEW_SESSION, -10, "creating new session: session already present demo"
    )


@pytest.mark.asyncio()
async def test_new_session_wrong_arity(harness: Harness) -> None:
    reply = await harness.call(ADDRESS_NEW_SESSION)
    assert reply.arguments[:2] == (ADDRESS_NEW_SESSION, -1)


@pytest.mark.asyncio()
async def test_list_sessions_picks_up_directories(harness: Harness, home: Path) -> None:
    (home / "alpha").mkdir()
    (home / "beta").mkdir()
    reply = await harness.call(ADDRESS_LIST_SESSIONS)
    assert reply.arguments == (ADDRESS_LIST_SESSIONS, 2, 0, "alpha", "beta")


@pytest.mark.asyncio()
async def test_open_and_remove(harness: Harness, home: Path) -> None:
    await harness.call(ADDRESS_NEW_SESSION, "alpha")
    await harness.call(ADDRESS_NEW_SESSION, "beta")

    reply = await harness.call(ADDRESS_OPEN_SESSION, "alpha")
    assert reply.arguments == (ADDRESS_OPEN_SESSION, "opened session alpha")

    reply = await harness.call(ADDRESS_REMOVE_SESSION, "beta")
    assert reply.arguments == (ADDRESS_REMOVE_SESSION, "removed session beta")
    assert not (home / "beta").exists()

    reply = await harness.call(ADDRESS_REMOVE_SESSION, "beta")
    assert reply == _error(
        ADDRESS_REMOVE_SESSION, -5, "removing session: session beta does not exist"
    )


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_add_without_session(harness: Harness) -> None:
    reply = await harness.call(ADDRESS_ADD, "synth", "/bin/echo")
    assert reply.arguments[:2] == (ADDRESS_ADD, -6)


@pytest.mark.asyncio()
async def test_add_silent_client_times_out(harness: Harness) -> None:
    await harness.call(ADDRESS_NEW_SESSION, "demo")

    reply = await harness.call(ADDRESS_ADD, "quiet", "/usr/bin/true")
    assert reply.arguments[:2] == (ADDRESS_ADD, -13)
    assert "quiet did not announce" in str(reply.arguments[2])

    reply = await harness.call(ADDRESS_LIST_CLIENTS)
    assert reply.arguments == (ADDRESS_LIST_CLIENTS, 0)
    await harness.spawner.join()


@pytest.mark.asyncio()
async def test_add_launch_failure(harness: Harness, tmp_path: Path) -> None:
    await harness.call(ADDRESS_NEW_SESSION, "demo")
    reply = await harness.call(ADDRESS_ADD, "ghost", str(tmp_path / "missing"))
    assert reply.arguments[:2] == (ADDRESS_ADD, -4)
    assert harness.handshakes.pending() == []


@pytest.mark.asyncio()
async def test_add_then_announce(harness: Harness) -> None:
    await harness.call(ADDRESS_NEW_SESSION, "demo")

    add = asyncio.create_task(
        harness.dispatcher.handle(make_request(ADDRESS_ADD, "synth", "/bin/echo"))
    )
    async with asyncio.timeout(5):
        while not any(h.pid for h in harness.handshakes.pending()):
            await asyncio.sleep(0.01)

    # The announcing pid need not be the spawned one.
    await harness.dispatcher.handle(
        make_request(ADDRESS_ANNOUNCE, "Synth", ":dirty:", "synth", 1, 2, 4242, sender=ANNOUNCER)
    )
    await add

    assert harness.sink.replies_to(ANNOUNCER) == [_ANNOUNCE_REPLY]
    assert harness.sink.replies_to(CONTROLLER)[-1] == _ANNOUNCE_REPLY

    reply = await harness.call(ADDRESS_LIST_CLIENTS)
    assert reply.arguments == (ADDRESS_LIST_CLIENTS, 1, "Synth", ":dirty:", "synth", 1, 2, 4242)
    await harness.spawner.join()


@pytest.mark.asyncio()
async def test_unsolicited_announce_joins_current_session(harness: Harness) -> None:
    await harness.call(ADDRESS_NEW_SESSION, "demo")
    reply = await harness.call(
        ADDRESS_ANNOUNCE, "Mixer", "", "mixer", 1, 0, 77, sender=ANNOUNCER
    )
    assert reply == _ANNOUNCE_REPLY

    duplicate = await harness.call(
        ADDRESS_ANNOUNCE, "Mixer", "", "mixer", 1, 0, 77, sender=ANNOUNCER
    )
    assert duplicate.arguments[:2] == (ADDRESS_ANNOUNCE, -10)


@pytest.mark.asyncio()
async def test_dirty_and_clean_notifications(harness: Harness) -> None:
    await harness.call(ADDRESS_NEW_SESSION, "demo")
    await harness.call(ADDRESS_ANNOUNCE, "Mixer", "", "mixer", 1, 0, 77, sender=ANNOUNCER)
    session = harness.sessions.current()
    assert session is not None
    clients = session.clients

    await harness.notify(ADDRESS_CLIENT_DIRTY, sender=ANNOUNCER)
    assert clients.any_dirty()

    await harness.notify(ADDRESS_CLIENT_CLEAN, sender=ANNOUNCER)
    assert not clients.any_dirty()


@pytest.mark.asyncio()
async def test_client_logs(harness: Harness, home: Path) -> None:
    await harness.call(ADDRESS_NEW_SESSION, "demo")

    reply = await harness.call(ADDRESS_CLIENT_LOGS, "synth", 1)
    assert reply == _error(
        ADDRESS_CLIENT_LOGS, -5, "getting client logs: client does not exist: synth"
    )

    reply = await harness.call(ADDRESS_CLIENT_LOGS, "synth", 7)
    assert reply == _error(
        ADDRESS_CLIENT_LOGS,
        -16,
        "getting client logs: stream selector must be either 1 or 2, got 7",
    )

    reply = await harness.call(ADDRESS_CLIENT_LOGS, "synth")
    assert reply.arguments[:2] == (ADDRESS_CLIENT_LOGS, -1)

    await harness.call(ADDRESS_ADD, "talker", "/bin/sh")  # exits on empty stdin, never announces
    await harness.spawner.join()
    reply = await harness.call(ADDRESS_CLIENT_LOGS, "talker", 2)
    assert reply.arguments == (ADDRESS_CLIENT_LOGS, "talker", 0)
