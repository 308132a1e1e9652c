# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 The IndexKeeper Authors

"""
Shared fixtures for IndexKeeper tests.

The fakes stand in for the server process and the remote archive so the
orchestration logic can be tested without Java or network access.
"""

import asyncio
import io
import tarfile
from pathlib import Path
from typing import Dict, Optional

import pytest

from indexkeeper.config import Config, PathsConfig, ServerConfig, UpdateConfig
from indexkeeper.errors import ShutdownTimeoutError, StartupFailureError


# =============================================================================
# FAKES
# =============================================================================

class FakeProcess:
    """Mimics asyncio.subprocess.Process for wait()/returncode."""

    def __init__(self, pid: int):
        self.pid = pid
        self.returncode: Optional[int] = None
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeSupervisor:
    """In-memory ProcessSupervisor replacement that records calls."""

    def __init__(self, fail_start: bool = False, fail_stop: bool = False):
        self.fail_start = fail_start
        self.fail_stop = fail_stop
        self.starts = 0
        self.stops = 0
        self.args = None
        self.process: Optional[FakeProcess] = None
        self.stop_requested = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def is_active(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self, args=()):
        if self.fail_start:
            raise StartupFailureError("server refused to start", returncode=1)
        self.starts += 1
        self.args = list(args)
        self.stop_requested = False
        self.process = FakeProcess(4000 + self.starts)
        return self.process.pid

    async def stop(self, grace=None):
        self.stops += 1
        if self.fail_stop:
            raise ShutdownTimeoutError(self.pid or 0)
        self.stop_requested = True
        if self.is_active():
            self.process.exit(-15)


class FakeFetcher:
    """Writes a fixed tree into the destination instead of downloading."""

    def __init__(
        self,
        token: Optional[str] = None,
        files: Optional[Dict[str, bytes]] = None,
        fail: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.token = token
        self.files = files if files is not None else {"node_1/data.bin": b"new"}
        self.fail = fail
        self.delay = delay
        self.fetches = []
        self.cancellation_tokens = []
        self.token_calls = 0

    async def fetch_version_token(self):
        self.token_calls += 1
        return self.token

    async def fetch(self, destination, is_temporary, cancellation_token=None):
        destination = Path(destination)
        self.fetches.append((destination, is_temporary))
        self.cancellation_tokens.append(cancellation_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        for rel, data in self.files.items():
            target = destination / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        return destination


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()


@pytest.fixture
def make_fetcher():
    return FakeFetcher


@pytest.fixture
def make_config(tmp_path):
    """Config rooted in tmp_path with instant timings."""

    def _make(**update_overrides) -> Config:
        update = {"settle_delay_seconds": 0, "task_stop_grace_seconds": 1, "check_interval_hours": 0}
        update.update(update_overrides)
        return Config(
            paths=PathsConfig(data_dir=tmp_path / "data", pid_file=tmp_path / "run" / "server.pid"),
            server=ServerConfig(working_dir=None),
            update=UpdateConfig(**update),
        )

    return _make


@pytest.fixture
def make_archive():
    """Build an in-memory tar archive from {member name: bytes}."""

    def _make(files: Dict[str, bytes], mode: str = "w:bz2") -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode=mode) as tar:
            for name, data in files.items():
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
        return buffer.getvalue()

    return _make


def populate(directory: Path, files: Dict[str, bytes]) -> Path:
    """Write files below a directory (used by tests via the fixture below)."""
    for rel, data in files.items():
        target = directory / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
    return directory


@pytest.fixture
def write_tree():
    return populate


@pytest.fixture
def make_supervisor():
    return FakeSupervisor
