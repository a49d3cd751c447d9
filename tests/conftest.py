"""Shared test fixtures for sessionkeeper."""

from __future__ import annotations

import asyncio
import stat
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import pytest

from sessionkeeper.config import ServerConfig
from sessionkeeper.models import Reply, Request, Sender

CONTROLLER: Sender = ("127.0.0.1", 40001)
ANNOUNCER: Sender = ("127.0.0.1", 40002)


class TaskCollector:
    """Stand-in for ``TaskGroup.create_task`` that remembers what it started."""

    def __init__(self) -> None:
        self.tasks: list[asyncio.Task[Any]] = []

    def __call__(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self.tasks.append(task)
        return task

    async def join(self, timeout: float = 10.0) -> list[Any]:
        """Wait for every collected task; re-raises the first failure."""
        async with asyncio.timeout(timeout):
            return await asyncio.gather(*self.tasks)


class FakeSink:
    """In-memory reply sink recording ``(recipient, reply)`` pairs."""

    url = "osc.udp://127.0.0.1:56070/"

    def __init__(self) -> None:
        self.sent: list[tuple[Sender, Reply]] = []

    def send(self, to: Sender, reply: Reply) -> None:
        self.sent.append((to, reply))

    def replies_to(self, peer: Sender) -> list[Reply]:
        return [reply for to, reply in self.sent if to == peer]


def make_request(address: str, *arguments: Any, sender: Sender = CONTROLLER) -> Request:
    return Request(address=address, arguments=arguments, sender=sender)


def write_script(path: Path, body: str) -> Path:
    """Write an executable ``/bin/sh`` script and return its path."""
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture()
def home(tmp_path: Path) -> Path:
    """Sessions home directory for tests."""
    return tmp_path / "sessions"


@pytest.fixture()
def spawner() -> TaskCollector:
    return TaskCollector()


@pytest.fixture()
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture()
def config(home: Path) -> ServerConfig:
    """Server config with short timeouts for fast tests."""
    return ServerConfig(home=home, port=0, announce_timeout=0.3, shutdown_grace=2.0)


@pytest.fixture()
def scripts(tmp_path: Path) -> Path:
    """Directory for throwaway client scripts, kept outside the sessions home."""
    path = tmp_path / "bin"
    path.mkdir()
    return path
