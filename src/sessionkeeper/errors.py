"""Error taxonomy shared by every layer of the session manager.

Each exception carries the numeric code sent back to OSC peers in an
``/error`` reply. Codes follow the NSM numbering where NSM defines an
equivalent; the remaining kinds are numbered below NSM's range.

Dependencies: (none, leaf module)
Wired in: everything that can fail on behalf of a protocol request
"""

from __future__ import annotations

from enum import IntEnum
from typing import Self


class ErrorCode(IntEnum):
    """Numeric error codes carried by ``/error`` replies."""

    GENERAL = -1
    LAUNCH_FAILED = -4
    NO_SUCH_FILE = -5
    NO_SESSION_OPEN = -6
    UNSAVED_CHANGES = -7
    NOT_NOW = -8
    CREATE_FAILED = -10
    TIMEOUT = -13
    IO_ERROR = -14
    INCONSISTENT_STATE = -15
    INVALID_ARGUMENT = -16


class SessionManagerError(Exception):
    """Base class for failures that are reported to a protocol peer."""

    code: ErrorCode = ErrorCode.GENERAL

    def wrap(self, context: str) -> Self:
        """Return a copy of this error whose message is prefixed with *context*.

        The copy keeps the error kind (and therefore its code) and chains the
        original as ``__cause__`` so the full history survives.
        """
        wrapped = type(self)(f"{context}: {self}")
        wrapped.__cause__ = self
        return wrapped


class MalformedRequestError(SessionManagerError):
    """Wrong argument count or argument type in a protocol message."""


class LaunchError(SessionManagerError):
    """A child process could not be started."""

    code = ErrorCode.LAUNCH_FAILED


class NotFoundError(SessionManagerError):
    """Unknown session, client, or process name."""

    code = ErrorCode.NO_SUCH_FILE


class NoSessionOpenError(SessionManagerError):
    """The operation needs a current session but none exists."""

    code = ErrorCode.NO_SESSION_OPEN


class UnsavedChangesError(SessionManagerError):
    """Removal refused because the session has unsaved state."""

    code = ErrorCode.UNSAVED_CHANGES


class HandshakeCancelledError(SessionManagerError):
    """The server shut down while a handshake was pending."""

    code = ErrorCode.NOT_NOW


class AlreadyExistsError(SessionManagerError):
    """Duplicate session name or duplicate client pid."""

    code = ErrorCode.CREATE_FAILED


class DuplicateNameError(AlreadyExistsError):
    """A process name is already reserved in a process group."""


class HandshakeTimeoutError(SessionManagerError):
    """A spawned client did not announce before the deadline."""

    code = ErrorCode.TIMEOUT


class StorageError(SessionManagerError):
    """Disk or pipe failure."""

    code = ErrorCode.IO_ERROR


class InconsistentStateError(SessionManagerError):
    """Persisted state contradicts what is on disk."""

    code = ErrorCode.INCONSISTENT_STATE


class InvalidArgumentError(SessionManagerError):
    """A well-formed argument holds a value the operation does not accept."""

    code = ErrorCode.INVALID_ARGUMENT


class ProcessExitError(SessionManagerError):
    """One or more supervised processes exited unsuccessfully."""
