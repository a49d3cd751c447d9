"""Command-line entry point: ``sessionkeeper [serve|sessions]``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Coroutine
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from sessionkeeper.config import ServerConfig, load_config
from sessionkeeper.errors import SessionManagerError
from sessionkeeper.server.app import SessionManager
from sessionkeeper.session import SessionRegistry

_log = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _project_version() -> str:
    """Return the installed distribution version, falling back to 0.1.0."""
    try:
        return version("sessionkeeper")
    except PackageNotFoundError:
        return "0.1.0"


def parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="sessionkeeper", description="OSC session manager for cooperating client processes"
    )
    parser.add_argument("--version", action="version", version=_project_version())
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=("serve", "sessions"),
        help="Subcommand: serve (default) | sessions",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a TOML config file (default: $SESSIONKEEPER_CONFIG)",
    )
    parser.add_argument(
        "--home", default=None, help="Sessions directory (default: ~/sessionkeeper-sessions)"
    )
    parser.add_argument("-H", "--host", default=None, help="Bind host (default: 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, default=None, help="Bind UDP port")
    parser.add_argument(
        "--debug", action="store_true", default=None, help="Enable debug logging"
    )
    return parser.parse_args(argv if argv is not None else sys.argv[1:])


def build_config(args: argparse.Namespace) -> ServerConfig:
    """Resolve the server config from file, environment, and parsed flags."""
    config_path = Path(args.config).expanduser() if args.config else None
    return load_config(
        config_path,
        overrides={
            "home": args.home,
            "host": args.host,
            "port": args.port,
            "debug": args.debug,
        },
    )


def list_sessions(config: ServerConfig) -> list[str]:
    """Return display lines for the sessions under ``config.home``.

    The current session is prefixed with ``*``.
    """

    def _no_spawn(coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        coro.close()
        raise RuntimeError("sessions listing does not start processes")

    registry = SessionRegistry.load(config.home, spawn=_no_spawn)
    current = registry.current_name
    return [f"{'*' if name == current else ' '} {name}" for name in registry.names()]


async def serve(config: ServerConfig) -> None:
    """Run the session manager until SIGINT/SIGTERM or ``/nsm/server/quit``."""
    manager = SessionManager(config)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, manager.stop)
    try:
        await manager.run()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


def main() -> None:
    """Load config, configure logging, and dispatch the subcommand."""
    load_dotenv(dotenv_path=Path.cwd() / ".env")
    args = parse_cli_args()
    try:
        config = build_config(args)
    except (TypeError, ValueError, OSError) as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO, format=_LOG_FORMAT
    )

    if args.command == "sessions":
        try:
            lines = list_sessions(config)
        except SessionManagerError as exc:
            raise SystemExit(f"Failed to read sessions: {exc}") from exc
        for line in lines:
            print(line)
        return

    try:
        asyncio.run(serve(config))
    except SessionManagerError as exc:
        raise SystemExit(f"Failed to start session manager: {exc}") from exc
    except ExceptionGroup as group:
        _log.error("Session manager failed", exc_info=group)
        raise SystemExit(1) from group


if __name__ == "__main__":
    main()
