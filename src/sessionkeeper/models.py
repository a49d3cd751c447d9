"""Pydantic models for announced clients and OSC requests/replies."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pythonosc.osc_message_builder import OscMessageBuilder

from sessionkeeper.errors import MalformedRequestError, SessionManagerError

# --- OSC addresses ---

ADDRESS_ADD = "/nsm/server/add"
ADDRESS_ANNOUNCE = "/nsm/server/announce"
ADDRESS_NEW_SESSION = "/nsm/server/new"
ADDRESS_REMOVE_SESSION = "/nsm/server/remove"
ADDRESS_OPEN_SESSION = "/nsm/server/open"
ADDRESS_LIST_CLIENTS = "/nsm/server/clients"
ADDRESS_LIST_SESSIONS = "/nsm/server/sessions"
ADDRESS_QUIT = "/nsm/server/quit"
ADDRESS_CLIENT_LOGS = "/nsm/client/logs"
ADDRESS_CLIENT_DIRTY = "/nsm/client/is_dirty"
ADDRESS_CLIENT_CLEAN = "/nsm/client/is_clean"
ADDRESS_PING = "/ping"
ADDRESS_PONG = "/pong"
ADDRESS_REPLY = "/reply"
ADDRESS_ERROR = "/error"

CAP_SERVER_CONTROL = "server-control"

Sender = tuple[str, int]
"""(host, port) of the peer that sent a datagram."""


def parse_capabilities(raw: str) -> frozenset[str]:
    """Parse an NSM capability string such as ``":switch:dirty:"``."""
    return frozenset(token for token in raw.split(":") if token)


def format_capabilities(caps: frozenset[str]) -> str:
    """Render a capability set in NSM's colon-delimited form."""
    if not caps:
        return ""
    return ":" + ":".join(sorted(caps)) + ":"


# --- Clients ---


class Client(BaseModel):
    """A process that announced itself to a session."""

    model_config = ConfigDict(frozen=True)

    application_name: str
    capabilities: frozenset[str] = Field(default_factory=frozenset)
    executable_name: str
    major: int
    minor: int
    pid: int
    address: Sender | None = None
    dirty: bool = False


# --- Wire messages ---


class Request(BaseModel):
    """A decoded inbound OSC message and the peer that sent it."""

    model_config = ConfigDict(frozen=True)

    address: str
    arguments: tuple[Any, ...] = ()
    sender: Sender

    def expect_arity(self, expected: int) -> None:
        """Raise ``MalformedRequestError`` unless exactly *expected* args are present."""
        got = len(self.arguments)
        if got != expected:
            raise MalformedRequestError(f"expected {expected} arguments, got {got}")

    def read_string(self, index: int, field: str) -> str:
        """Return argument *index* as a string."""
        value = self._argument(index, field)
        if not isinstance(value, str):
            raise MalformedRequestError(
                f"reading {field}: expected string, got {type(value).__name__}"
            )
        return value

    def read_int32(self, index: int, field: str) -> int:
        """Return argument *index* as a 32-bit integer."""
        value = self._argument(index, field)
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedRequestError(
                f"reading {field}: expected int32, got {type(value).__name__}"
            )
        if not -(2**31) <= value < 2**31:
            raise MalformedRequestError(f"reading {field}: {value} does not fit in int32")
        return value

    def _argument(self, index: int, field: str) -> Any:
        if index >= len(self.arguments):
            raise MalformedRequestError(f"reading {field}: missing argument {index}")
        return self.arguments[index]


class Reply(BaseModel):
    """An outbound OSC message."""

    model_config = ConfigDict(frozen=True)

    address: str
    arguments: tuple[str | int, ...] = ()

    def to_datagram(self) -> bytes:
        """Encode the reply as an OSC datagram."""
        builder = OscMessageBuilder(address=self.address)
        for value in self.arguments:
            if isinstance(value, str):
                builder.add_arg(value, OscMessageBuilder.ARG_TYPE_STRING)
            else:
                builder.add_arg(int(value), OscMessageBuilder.ARG_TYPE_INT)
        return builder.build().dgram


def success_reply(request_address: str, *payload: str | int) -> Reply:
    """Return ``/reply <request_address> <payload...>``."""
    return Reply(address=ADDRESS_REPLY, arguments=(request_address, *payload))


def error_reply(request_address: str, error: SessionManagerError) -> Reply:
    """Return ``/error <request_address> <code> <message>``."""
    return Reply(address=ADDRESS_ERROR, arguments=(request_address, int(error.code), str(error)))
