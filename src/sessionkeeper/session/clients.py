"""Thread-safe pid-keyed registry of announced clients."""

from __future__ import annotations

import threading

from sessionkeeper.errors import AlreadyExistsError
from sessionkeeper.models import Client, Sender


class ClientRegistry:
    """Maps process id → :class:`Client` for one session.

    Callers only ever see copies; the backing dict never leaves the lock.
    """

    def __init__(self) -> None:
        self._clients: dict[int, Client] = {}
        self._lock = threading.Lock()

    def insert(self, pid: int, client: Client) -> None:
        """Register *client* under *pid*; ``AlreadyExistsError`` if *pid* is taken."""
        with self._lock:
            if pid in self._clients:
                raise AlreadyExistsError(f"client with pid {pid} already exists")
            self._clients[pid] = client

    def get(self, pid: int) -> Client | None:
        """Return the client registered under *pid*, if any."""
        with self._lock:
            return self._clients.get(pid)

    def snapshot(self) -> dict[int, Client]:
        """Return a copy of the full pid → client mapping."""
        with self._lock:
            return dict(self._clients)

    def set_dirty(self, address: Sender, dirty: bool) -> Client | None:
        """Record the unsaved-state flag reported by the client at *address*.

        Returns the updated client, or ``None`` when no client announced
        from that address.
        """
        with self._lock:
            for pid, client in self._clients.items():
                if client.address == address:
                    updated = client.model_copy(update={"dirty": dirty})
                    self._clients[pid] = updated
                    return updated
        return None

    def any_dirty(self) -> bool:
        """Return True if any client reported unsaved changes."""
        with self._lock:
            return any(client.dirty for client in self._clients.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)
