"""Server configuration loading.

Values are layered: built-in defaults, then an optional TOML file with a
``[server]`` table, then ``SESSIONKEEPER_*`` environment variables, then
explicit overrides (command-line flags).

Dependencies: (none, leaf module)
Wired in: cli.py → main()
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import cast

DEFAULT_PORT = 56070
CONFIG_ENV_VAR = "SESSIONKEEPER_CONFIG"

_ENV_PREFIX = "SESSIONKEEPER_"
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def default_home() -> Path:
    """Return the default sessions home directory."""
    return Path.home() / "sessionkeeper-sessions"


@dataclass(frozen=True)
class ServerConfig:
    """Immutable settings for one server instance."""

    home: Path
    """Directory holding one subdirectory per session."""

    host: str = "127.0.0.1"
    """Address the OSC endpoint binds to."""

    port: int = DEFAULT_PORT
    """UDP port; ``0`` lets the OS pick one."""

    debug: bool = False
    """Enable debug logging."""

    announce_timeout: float = 2.0
    """Seconds an add request waits for the spawned client to announce."""

    shutdown_grace: float = 5.0
    """Seconds to wait for terminated children before killing them."""

    server_name: str = "sessionkeeper"
    """Name sent to clients in the announce reply."""

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port must be between 0 and 65535, got {self.port}")
        if self.announce_timeout <= 0:
            raise ValueError("announce_timeout must be > 0.")
        if self.shutdown_grace <= 0:
            raise ValueError("shutdown_grace must be > 0.")
        if not self.server_name.strip():
            raise ValueError("server_name must not be empty.")


def _coerce(key: str, raw: object) -> object:
    """Convert a raw TOML/env value to the type of the ``ServerConfig`` field."""
    try:
        if key == "home":
            return Path(str(raw)).expanduser()
        if key == "port":
            return int(str(raw))
        if key in ("announce_timeout", "shutdown_grace"):
            return float(str(raw))
        if key == "debug":
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in _TRUTHY
    except ValueError as exc:
        raise ValueError(f"Invalid value for '{key}': {raw!r}") from exc
    return str(raw)


def _field_names() -> tuple[str, ...]:
    return tuple(f.name for f in fields(ServerConfig))


def _from_toml(config_path: Path) -> dict[str, object]:
    if not config_path.is_file():
        return {}
    with config_path.open("rb") as fh:
        data = tomllib.load(fh)
    section = data.get("server", {})
    if not isinstance(section, dict):
        raise TypeError(f"'{config_path}': [server] must be a table.")
    known = _field_names()
    raw = cast(dict[str, object], section)
    return {key: _coerce(key, value) for key, value in raw.items() if key in known}


def _from_env(environ: Mapping[str, str]) -> dict[str, object]:
    values: dict[str, object] = {}
    for key in _field_names():
        raw = environ.get(_ENV_PREFIX + key.upper())
        if raw is not None and raw != "":
            values[key] = _coerce(key, raw)
    return values


def load_config(
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> ServerConfig:
    """Build a ``ServerConfig`` from file, environment, and overrides.

    *overrides* entries whose value is ``None`` are ignored, so parsed CLI
    arguments can be passed straight through.
    """
    env = os.environ if environ is None else environ
    if config_path is None and env.get(CONFIG_ENV_VAR):
        config_path = Path(env[CONFIG_ENV_VAR]).expanduser()

    config = ServerConfig(home=default_home())
    layers: list[dict[str, object]] = []
    if config_path is not None:
        layers.append(_from_toml(config_path))
    layers.append(_from_env(env))
    if overrides:
        known = _field_names()
        layers.append(
            {k: _coerce(k, v) for k, v in overrides.items() if v is not None and k in known}
        )
    for layer in layers:
        if layer:
            config = replace(config, **layer)  # type: ignore[arg-type]
    return config
