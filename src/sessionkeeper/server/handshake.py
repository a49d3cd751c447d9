"""Add → announce handshake coordination.

Every add request opens a :class:`PendingHandshake` with its own one-shot
future before the client is spawned. An announce is matched to the pending
handshake whose spawned pid equals the announced pid; when no pid matches
(the announcing process may be a grandchild of what we spawned) the oldest
pending handshake is used, which is exact whenever one add is in flight.
An announce from the pid of a handshake that already timed out or was
cancelled never falls back; it belongs to nobody still waiting.

Waits use a monotonic deadline (``asyncio.timeout``). Delivery never blocks:
an announce with nobody waiting simply resolves nothing.

Dependencies: errors, models
Wired in: server/dispatcher.py → Dispatcher.add / Dispatcher.announce
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from enum import StrEnum

from sessionkeeper.errors import HandshakeCancelledError, HandshakeTimeoutError
from sessionkeeper.models import Reply

_log = logging.getLogger(__name__)


class HandshakeState(StrEnum):
    SPAWNING = "spawning"
    AWAITING_ANNOUNCE = "awaiting_announce"
    ANNOUNCED = "announced"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


class PendingHandshake:
    """One in-flight add request waiting for its client to announce."""

    def __init__(self, token: int, session_name: str) -> None:
        self.token = token
        self.session_name = session_name
        self.client_name = "(spawning)"
        self.pid: int | None = None
        self.state = HandshakeState.SPAWNING
        self._future: asyncio.Future[Reply] = asyncio.get_running_loop().create_future()

    def __repr__(self) -> str:
        return (
            f"PendingHandshake(token={self.token}, client={self.client_name!r}, "
            f"pid={self.pid}, state={self.state})"
        )

    @property
    def done(self) -> bool:
        return self._future.done()


class AnnounceCoordinator:
    """Registry of pending handshakes, each resolved at most once."""

    def __init__(self) -> None:
        self._pending: dict[int, PendingHandshake] = {}
        self._tokens = itertools.count(1)
        self._closed_pids: set[int] = set()
        self._lock = threading.Lock()

    def begin(self, session_name: str) -> PendingHandshake:
        """Open a handshake for a client about to be spawned into *session_name*."""
        with self._lock:
            handshake = PendingHandshake(next(self._tokens), session_name)
            self._pending[handshake.token] = handshake
        return handshake

    def spawned(self, handshake: PendingHandshake, client_name: str, pid: int) -> None:
        """Record the name and pid of the spawned process."""
        with self._lock:
            handshake.client_name = client_name
            handshake.pid = pid
            self._closed_pids.discard(pid)
            if handshake.state is HandshakeState.SPAWNING:
                handshake.state = HandshakeState.AWAITING_ANNOUNCE

    def abandon(self, handshake: PendingHandshake) -> None:
        """Drop a handshake whose spawn failed."""
        with self._lock:
            self._pending.pop(handshake.token, None)
            handshake.state = HandshakeState.ABANDONED
            if handshake.pid is not None:
                self._closed_pids.add(handshake.pid)
        handshake._future.cancel()

    def match(self, pid: int) -> PendingHandshake | None:
        """Return the pending handshake an announce from *pid* belongs to."""
        with self._lock:
            open_handshakes = [h for h in self._pending.values() if not h.done]
            late = pid in self._closed_pids
        for handshake in open_handshakes:
            if handshake.pid == pid:
                return handshake
        if late:
            _log.info("Ignoring announce from pid %d; its handshake already ended", pid)
            return None
        return open_handshakes[0] if open_handshakes else None

    def deliver(self, handshake: PendingHandshake, reply: Reply) -> bool:
        """Resolve *handshake* with the announce reply; False if already finished."""
        with self._lock:
            if handshake.done:
                return False
            handshake.state = HandshakeState.ANNOUNCED
            handshake._future.set_result(reply)
        _log.info("Handshake for %s resolved", handshake.client_name)
        return True

    def pending(self) -> list[PendingHandshake]:
        with self._lock:
            return list(self._pending.values())

    async def wait(self, handshake: PendingHandshake, timeout: float) -> Reply:
        """Wait up to *timeout* seconds for the announce reply.

        Raises ``HandshakeTimeoutError`` on expiry and
        ``HandshakeCancelledError`` when the coordinator is shut down.
        """
        try:
            async with asyncio.timeout(timeout):
                return await handshake._future
        except TimeoutError:
            with self._lock:
                # Delivered just as the deadline fired.
                if handshake.state is HandshakeState.ANNOUNCED:
                    return handshake._future.result()
                handshake.state = HandshakeState.TIMED_OUT
                if handshake.pid is not None:
                    self._closed_pids.add(handshake.pid)
            _log.warning(
                "Client %s did not announce within %.1fs", handshake.client_name, timeout
            )
            raise HandshakeTimeoutError(
                f"client {handshake.client_name} did not announce within {timeout:g}s"
            ) from None
        finally:
            with self._lock:
                self._pending.pop(handshake.token, None)

    def cancel_all(self) -> int:
        """Fail every pending handshake with ``HandshakeCancelledError``."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            cancelled = 0
            for handshake in pending:
                if handshake.done:
                    continue
                handshake.state = HandshakeState.CANCELLED
                if handshake.pid is not None:
                    self._closed_pids.add(handshake.pid)
                handshake._future.set_exception(
                    HandshakeCancelledError(
                        f"server shutting down before {handshake.client_name} announced"
                    )
                )
                cancelled += 1
        if cancelled:
            _log.info("Cancelled %d pending handshake(s)", cancelled)
        return cancelled
