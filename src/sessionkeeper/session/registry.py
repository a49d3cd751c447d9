"""Disk-backed collection of sessions with a persisted current-session marker.

Every immediate subdirectory of the home directory is a session. The name of
the current session is kept in ``<home>/.current`` so it survives restarts.
One lock guards the session map and the current name. Checks and the
rename that detaches a removed session happen under that lock; deleting
the detached tree does not.

Dependencies: errors, infra.fs, session.session, validation
Wired in: server/app.py → SessionManager, cli.py → list_sessions
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from pathlib import Path

from sessionkeeper.errors import (
    AlreadyExistsError,
    InconsistentStateError,
    NotFoundError,
    StorageError,
    UnsavedChangesError,
)
from sessionkeeper.infra.fs import ensure_dir, write_atomic
from sessionkeeper.infra.process_group import ProcessGroup, Spawn
from sessionkeeper.session.session import Session
from sessionkeeper.validation import validate_name

_log = logging.getLogger(__name__)

CURRENT_SESSION_MARKER = ".current"


class SessionRegistry:
    """Owns every session found under *home* and tracks the current one."""

    def __init__(self, home: Path, *, spawn: Spawn) -> None:
        self.home = home
        self._spawn = spawn
        self._sessions: dict[Path, Session] = {}
        self._current: str | None = None
        self._retired: list[ProcessGroup] = []
        self._lock = threading.Lock()

    @classmethod
    def load(cls, home: Path, *, spawn: Spawn) -> SessionRegistry:
        """Open *home* (creating it), read its sessions, and select the current one."""
        registry = cls(home, spawn=spawn)
        ensure_dir(home)
        registry.read()
        registry.select_current()
        return registry

    @property
    def marker_path(self) -> Path:
        return self.home / CURRENT_SESSION_MARKER

    def _path_for(self, name: str) -> Path:
        return self.home / name

    # ------------------------------------------------------------------
    # Current session
    # ------------------------------------------------------------------

    def _select_arbitrary_locked(self) -> None:
        if not self._sessions:
            self._current = None
            return
        self._current = sorted(p.name for p in self._sessions)[0]

    def _persist_current_locked(self) -> None:
        if self._current is None:
            self.marker_path.unlink(missing_ok=True)
            return
        write_atomic(self.marker_path, self._current + "\n")

    def select_current(self) -> str | None:
        """Restore the current session from the marker file.

        Without a marker an arbitrary session is chosen. A marker naming an
        untracked session raises ``InconsistentStateError``.
        """
        try:
            recorded = self.marker_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            recorded = ""
        except OSError as exc:
            raise StorageError(f"reading {self.marker_path}: {exc}") from exc

        with self._lock:
            if not recorded:
                self._select_arbitrary_locked()
            elif self._path_for(recorded) not in self._sessions:
                raise InconsistentStateError(
                    f"current session marker names {recorded!r}, which does not exist"
                )
            else:
                self._current = recorded
            _log.info("Current session: %s", self._current or "(none)")
            return self._current

    def current(self) -> Session | None:
        """Return the current session, or ``None`` when there are no sessions."""
        with self._lock:
            if self._current is None:
                return None
            return self._sessions.get(self._path_for(self._current))

    @property
    def current_name(self) -> str | None:
        with self._lock:
            return self._current

    def open(self, name: str) -> Session:
        """Make *name* the current session."""
        with self._lock:
            session = self._sessions.get(self._path_for(name))
            if session is None:
                raise NotFoundError(f"session {name} does not exist")
            self._current = name
            self._persist_current_locked()
        _log.info("Switched to session %s", name)
        return session

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def get(self, name: str) -> Session | None:
        with self._lock:
            return self._sessions.get(self._path_for(name))

    def sessions(self) -> list[Session]:
        """Return the tracked sessions ordered by name."""
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(p.name for p in self._sessions)

    def listing(self) -> tuple[list[str], int]:
        """Return ``(names, current_index)`` from one consistent view."""
        with self._lock:
            names = sorted(p.name for p in self._sessions)
            current = names.index(self._current) if self._current in names else 0
            return names, current

    def new(self, name: str, *, make_current: bool = True) -> Session:
        """Create the session *name* on disk and (by default) make it current."""
        name = validate_name(name, "session name")
        path = self._path_for(name)
        with self._lock:
            if path in self._sessions:
                raise AlreadyExistsError(f"session already present {name}")
            session = Session(path, spawn=self._spawn)
            self._sessions[path] = session
            if make_current or self._current is None:
                self._current = name
                self._persist_current_locked()
        _log.info("Created session %s", name)
        return session

    def _retire_locked(self, session: Session) -> None:
        """Terminate the children of a session leaving the map and keep its group."""
        signalled = session.processes.terminate()
        if signalled:
            _log.info("Terminated %d process(es) of session %s", signalled, session.name)
        self._retired = [group for group in self._retired if group.running()]
        self._retired.append(session.processes)

    def process_groups(self) -> list[ProcessGroup]:
        """Return the process groups of live sessions plus those of dropped ones."""
        with self._lock:
            live = [session.processes for session in self._sessions.values()]
            return live + list(self._retired)

    def remove(self, name: str) -> None:
        """Delete session *name* and its directory tree.

        Refuses with ``UnsavedChangesError`` while the session is dirty.
        Running children of the session are terminated. When the current
        session is removed another one is selected. Blocking; call it off
        the event loop.
        """
        path = self._path_for(name)
        tombstone = path.with_name(f".{name}.{uuid.uuid4().hex}.removed")
        with self._lock:
            session = self._sessions.get(path)
            if session is None:
                raise NotFoundError(f"session {name} does not exist")
            if session.dirty():
                raise UnsavedChangesError(f"session {name} has unsaved changes")
            try:
                path.rename(tombstone)
            except OSError as exc:
                raise StorageError(f"removing {path}: {exc}") from exc
            del self._sessions[path]
            self._retire_locked(session)
            if self._current == name:
                self._select_arbitrary_locked()
                self._persist_current_locked()

        # Hidden tombstones are never read back as sessions.
        try:
            shutil.rmtree(tombstone)
        except OSError as exc:
            _log.warning("Could not delete %s after removing session %s: %s", tombstone, name, exc)
        _log.info("Removed session %s", name)

    def read(self) -> list[str]:
        """Resynchronize the session map with the home directory.

        Directories that vanished are dropped, terminating their children,
        and new ones are picked up. Sessions whose directory still exists
        keep their live state. Returns the resulting session names.
        """
        try:
            found = sorted(
                p for p in self.home.iterdir() if p.is_dir() and not p.name.startswith(".")
            )
        except OSError as exc:
            raise StorageError(f"reading {self.home}: {exc}") from exc

        with self._lock:
            sessions: dict[Path, Session] = {}
            for path in found:
                existing = self._sessions.get(path)
                sessions[path] = existing or Session(path, spawn=self._spawn)
            for path, session in self._sessions.items():
                if path not in sessions:
                    _log.warning("Session %s disappeared from disk", session.name)
                    self._retire_locked(session)
            self._sessions = sessions
            if self._current is not None and self._path_for(self._current) not in sessions:
                self._select_arbitrary_locked()
                self._persist_current_locked()
            elif self._current is None:
                self._select_arbitrary_locked()
            return sorted(p.name for p in sessions)

    def close(self) -> None:
        """Persist the current-session marker."""
        with self._lock:
            self._persist_current_locked()
