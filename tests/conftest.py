# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for srvbak tests.

Provides a populated fake server directory, a recording process controller,
a recording event sink and initialized engine state.
"""

import asyncio
import hashlib
import os
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List

import pytest
import pytest_asyncio

from srvbak.config import FAILED_SUFFIX, SourceCategory

# Set test environment variables
os.environ["SRVBAK_ADMIN_API_KEY"] = "test-api-key-12345"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def write_file(path: Path, content: bytes | str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    return path


def populate_server(server_dir: Path) -> Path:
    """Lay out a small game server: two world dimensions, plugins and config files."""
    write_file(server_dir / "world" / "level.dat", os.urandom(2048))
    write_file(server_dir / "world" / "region" / "r.0.0.mca", os.urandom(16384))
    write_file(server_dir / "world" / "region" / "r.0.1.mca", os.urandom(8192))
    write_file(server_dir / "world" / "playerdata" / "0f3c.dat", os.urandom(512))
    (server_dir / "world" / "datapacks").mkdir(parents=True)
    write_file(server_dir / "world_nether" / "DIM-1" / "region" / "r.0.0.mca", os.urandom(4096))
    write_file(server_dir / "plugins" / "Essentials.jar", os.urandom(4096))
    write_file(server_dir / "plugins" / "Essentials" / "config.yml", "motd: hello\n")
    write_file(server_dir / "server.properties", "motd=A Minecraft Server\nmax-players=20\n")
    write_file(server_dir / "bukkit.yml", "settings:\n  allow-end: true\n")
    write_file(server_dir / "ops.json", "[]\n")
    write_file(server_dir / "server.log", "not captured\n")
    # world_the_end and the remaining config files are intentionally absent
    return server_dir


@pytest.fixture
def server_dir(temp_dir: Path) -> Path:
    """Create a populated server directory."""
    return populate_server(temp_dir / "server")


@pytest.fixture
def engine_config(temp_dir: Path, server_dir: Path):
    """Create a test configuration."""
    from srvbak.builder import create_config

    return create_config(
        server_dir,
        vault_path=temp_dir / "vault",
        service_version="1.20.4",
        zstd_level=3,
    )


class FakeProcessController:
    """Process controller that records calls and can be told to fail."""

    def __init__(self, running: bool = True):
        self.running = running
        self.calls: List[str] = []
        self.active_categories: set = set()
        self.fail_quiesce = False
        self.fail_stop = False
        self.fail_start = False
        self.quiesce_gate: asyncio.Event | None = None

    async def quiesce(self) -> None:
        self.calls.append("quiesce")
        if self.quiesce_gate is not None:
            await self.quiesce_gate.wait()
        if self.fail_quiesce:
            raise RuntimeError("save-off timed out")

    async def resume(self) -> None:
        self.calls.append("resume")

    async def stop(self) -> bool:
        self.calls.append("stop")
        if self.fail_stop:
            raise RuntimeError("server did not stop")
        was_running = self.running
        self.running = False
        return was_running

    async def start(self) -> None:
        self.calls.append("start")
        if self.fail_start:
            raise RuntimeError("server did not start")
        self.running = True

    def actively_writes(self, category: SourceCategory) -> bool:
        return category in self.active_categories


class RecordingEventSink:
    """Event sink that keeps every event."""

    def __init__(self):
        self.events: List[dict] = []

    def emit(self, event: dict) -> None:
        self.events.append(event)

    def statuses(self, job_id: str) -> List[str]:
        return [e["status"] for e in self.events if e["job_id"] == job_id]


@pytest.fixture
def controller() -> FakeProcessController:
    return FakeProcessController()


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest_asyncio.fixture
async def engine_state(engine_config, controller, event_sink):
    """Create initialized engine state for testing."""
    from srvbak.core import initialize_engine, shutdown_engine

    state = await initialize_engine(engine_config, controller, event_sink)
    yield state
    await shutdown_engine(state)


def tree_snapshot(root: Path) -> Dict[str, tuple]:
    """
    Map every path under root to (kind, sha256, mtime).

    Top-level ``.failed-`` leftovers are ignored.
    """
    snapshot: Dict[str, tuple] = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if FAILED_SUFFIX in relative.parts[0]:
            continue
        if path.is_dir():
            snapshot[str(relative)] = ("dir", None, None)
        else:
            digest = hashlib.sha256(path.read_bytes()).hexdigest()
            snapshot[str(relative)] = ("file", digest, path.stat().st_mtime)
    return snapshot


@pytest.fixture
def snapshot_tree() -> Callable[[Path], Dict[str, tuple]]:
    return tree_snapshot


@pytest.fixture
def make_server() -> Callable[[Path], Path]:
    return populate_server


@pytest.fixture
def target_config(temp_dir: Path):
    """A second deployment running a newer server version."""
    from srvbak.builder import create_config

    target_dir = populate_server(temp_dir / "target-server")
    (target_dir / "world" / "only-on-target.dat").write_bytes(b"target")
    return create_config(
        target_dir,
        vault_path=temp_dir / "target-vault",
        service_version="1.21",
        zstd_level=3,
    )


@pytest_asyncio.fixture
async def target_state(target_config):
    """Engine state for the second deployment, with its own controller and sink."""
    from srvbak.core import initialize_engine, shutdown_engine

    state = await initialize_engine(target_config, FakeProcessController(), RecordingEventSink())
    yield state
    await shutdown_engine(state)
