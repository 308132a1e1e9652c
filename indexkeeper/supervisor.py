# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Process Supervisor

Starts, monitors and stops the search-index server child process. The
server PID is persisted to a pid file so that a restarted supervisor can
tell a live server apart from a stale record.
"""

import asyncio
import logging
import os
import shutil
import signal
import time
from pathlib import Path
from typing import Optional, Sequence

from .config import PathsConfig, ServerConfig
from .errors import AlreadyRunningError, ShutdownTimeoutError, StartupFailureError

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 15  # seconds between "still waiting" messages


def is_running(pid: Optional[int]) -> bool:
    """
    Check whether a process exists, without side effects.

    PID 0 and negative PIDs address process groups, never a single server,
    so they are treated as not running.
    """
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except (OverflowError, OSError):
        # OverflowError: beyond the platform pid_t range
        return False
    return True


def read_pid_file(path: Path) -> Optional[int]:
    """Read a PID from disk; anything unparsable reads as None."""
    try:
        text = Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        return int(text)
    except ValueError:
        return None


class ProcessSupervisor:
    """
    Owns the single server child process.

    Usage:
        supervisor = ProcessSupervisor(["java", "-jar", "photon.jar"], Path("/tmp/photon.pid"))
        pid = await supervisor.start(["-listen-ip", "0.0.0.0"])
        ...
        await supervisor.stop()
    """

    def __init__(
        self,
        command: Sequence[str],
        pid_file: Path,
        working_dir: Optional[Path] = None,
        startup_wait: float = 3.0,
        stop_grace: float = 60.0,
        kill_wait: float = 2.0,
        poll_interval: float = 1.0,
    ):
        if not command:
            raise ValueError("Server command must not be empty")
        self.command = list(command)
        self.pid_file = Path(pid_file)
        self.working_dir = Path(working_dir) if working_dir else None
        self.startup_wait = startup_wait
        self.stop_grace = stop_grace
        self.kill_wait = kill_wait
        self.poll_interval = poll_interval

        self._process: Optional[asyncio.subprocess.Process] = None
        self._stop_requested = False

    @classmethod
    def from_config(cls, server: ServerConfig, paths: PathsConfig) -> "ProcessSupervisor":
        return cls(
            command=server.command,
            pid_file=paths.pid_file,
            working_dir=server.working_dir,
            startup_wait=server.startup_wait_seconds,
            stop_grace=server.stop_grace_seconds,
            kill_wait=server.kill_wait_seconds,
            poll_interval=server.poll_interval_seconds,
        )

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        """Handle of the child started by this supervisor, if any."""
        return self._process

    @property
    def pid(self) -> Optional[int]:
        if self._process is not None:
            return self._process.pid
        return read_pid_file(self.pid_file)

    @property
    def stop_requested(self) -> bool:
        """True if the current/last child was stopped on purpose."""
        return self._stop_requested

    def is_active(self) -> bool:
        """Whether the server is running right now."""
        pid = self.pid
        return pid is not None and self._is_alive(pid)

    def _is_alive(self, pid: int) -> bool:
        # Our own child: trust the reaped return code over kill(0), which
        # still succeeds on an unreaped zombie
        if self._process is not None and self._process.pid == pid:
            return self._process.returncode is None
        return is_running(pid)

    # =========================================================================
    # START
    # =========================================================================

    async def start(self, args: Sequence[str] = ()) -> int:
        """
        Launch the server with pass-through arguments.

        Returns:
            PID of the started server.

        Raises:
            AlreadyRunningError: A live PID is recorded; nothing was launched.
            StartupFailureError: Launch failed or the process died within
                                 the startup window.
        """
        self._clear_stale_pid()

        executable = self.command[0]
        if shutil.which(executable) is None and not Path(executable).is_file():
            raise StartupFailureError(f"Server executable not found: {executable}")
        if self.working_dir is not None and not self.working_dir.is_dir():
            raise StartupFailureError(f"Server working directory does not exist: {self.working_dir}")

        argv = [*self.command, *args]
        logger.info("Executing: %s", " ".join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.working_dir) if self.working_dir else None,
            )
        except OSError as e:
            raise StartupFailureError(f"Failed to start server: {e}") from e

        self._process = process
        self._stop_requested = False
        try:
            self._write_pid(process.pid)
        except OSError as e:
            process.kill()
            await process.wait()
            raise StartupFailureError(f"Could not persist server PID to {self.pid_file}: {e}") from e
        logger.info("Server process started with PID %d, waiting for startup...", process.pid)

        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=self.startup_wait)
        except asyncio.TimeoutError:
            logger.info("Server started successfully with PID %d", process.pid)
            return process.pid

        logger.error("Server process died shortly after startup (exit code %s)", returncode)
        self._clear_pid_file()
        raise StartupFailureError(
            f"Server exited with code {returncode} within {self.startup_wait}s of launch",
            returncode=returncode,
        )

    def _clear_stale_pid(self) -> None:
        if self._process is not None and self._process.returncode is None:
            raise AlreadyRunningError(self._process.pid)
        if not self.pid_file.exists():
            return
        old_pid = read_pid_file(self.pid_file)
        if old_pid is not None and self._is_alive(old_pid):
            logger.warning("Server already running with PID %d", old_pid)
            raise AlreadyRunningError(old_pid)
        logger.info("Removing stale PID file %s (pid=%s)", self.pid_file, old_pid)
        self._clear_pid_file()

    # =========================================================================
    # STOP
    # =========================================================================

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop the server: SIGTERM, wait up to the grace period, then SIGKILL.

        A missing PID or an already-dead process counts as stopped. The PID
        file is cleared in every outcome.

        Raises:
            ShutdownTimeoutError: The process survived SIGKILL.
        """
        grace = self.stop_grace if grace is None else grace
        pid = self.pid
        if pid is None:
            logger.info("No server PID found, nothing to stop")
            return

        self._stop_requested = True
        try:
            if not self._is_alive(pid):
                logger.info("Server (PID %d) is not running", pid)
                return

            logger.info("Stopping server gracefully (PID: %d)", pid)
            self._signal(pid, signal.SIGTERM)
            if await self._wait_for_exit(pid, grace, log_progress=True):
                logger.info("Server stopped")
                return

            logger.warning("Force killing server (PID: %d)", pid)
            self._signal(pid, signal.SIGKILL)
            if await self._wait_for_exit(pid, self.kill_wait):
                logger.info("Server killed")
                return

            logger.warning("Process %d may still be running", pid)
            raise ShutdownTimeoutError(pid)
        finally:
            self._clear_pid_file()

    async def wait(self) -> int:
        """Block until the current child exits and return its exit code."""
        if self._process is None:
            raise RuntimeError("No server process has been started")
        return await self._process.wait()

    async def _wait_for_exit(self, pid: int, timeout: float, log_progress: bool = False) -> bool:
        start = time.monotonic()
        next_report = PROGRESS_LOG_INTERVAL
        while self._is_alive(pid):
            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                return False
            if log_progress and elapsed >= next_report:
                logger.info("Waiting for graceful shutdown... (%ds)", int(elapsed))
                next_report += PROGRESS_LOG_INTERVAL
            await asyncio.sleep(min(self.poll_interval, timeout - elapsed))
        return True

    @staticmethod
    def _signal(pid: int, sig: int) -> None:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass

    # =========================================================================
    # PID FILE
    # =========================================================================

    def _write_pid(self, pid: int) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.pid_file.with_name(self.pid_file.name + ".tmp")
        tmp_path.write_text(f"{pid}\n", encoding="utf-8")
        os.replace(tmp_path, self.pid_file)

    def _clear_pid_file(self) -> None:
        try:
            self.pid_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove PID file %s: %s", self.pid_file, e)
