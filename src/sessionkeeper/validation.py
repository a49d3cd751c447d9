"""Centralized name validation for session and client identifiers.

Both kinds of name become directory names, so anything that could escape
the parent directory is rejected.

Dependencies: errors
Wired in: session/session.py, session/registry.py
"""

from __future__ import annotations

import re

from sessionkeeper.errors import MalformedRequestError

_UNSAFE_PATTERN = re.compile(r"[/\\\x00]|\.\.")
_MAX_NAME_LENGTH = 64


def validate_name(name: str, kind: str = "name") -> str:
    """Validate a name used as a single path component.

    Rejects empty strings, names containing path separators, NUL or ``..``,
    names starting with ``.`` (hidden entries are reserved for bookkeeping
    files) and names longer than 64 characters.

    Returns the stripped *name*, raises ``MalformedRequestError`` otherwise.
    """
    stripped = name.strip() if name else ""
    if not stripped:
        raise MalformedRequestError(f"{kind} must not be empty")
    if _UNSAFE_PATTERN.search(stripped):
        raise MalformedRequestError(f"{kind} contains unsafe path characters: {stripped!r}")
    if stripped.startswith("."):
        raise MalformedRequestError(f"{kind} must not start with '.': {stripped!r}")
    if len(stripped) > _MAX_NAME_LENGTH:
        raise MalformedRequestError(
            f"{kind} exceeds {_MAX_NAME_LENGTH} characters: {len(stripped)}"
        )
    return stripped
