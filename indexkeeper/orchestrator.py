# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Update Orchestrator

Top-level state machine. Decides at startup (and periodically afterwards)
whether a newer dataset exists, keeps the server running on the current
dataset, and runs at most one background update at a time.

Startup flow:
  1. Repair an interrupted swap, clear leftover downloads
  2. Fetch the remote checksum (best effort)
  3. No dataset: download it synchronously, then start the server
  4. Dataset present: start the server, and if the remote checksum differs
     from the one last started, launch a background update

Background update flow:
  1. Wait for the server to settle
  2. Download and extract into the temp directory
  3. Swap it into place (stops the server)
  4. Record the new checksum and restart the server

Background failures never take the supervisor down: the server is left
running, or restarted on the restored dataset if the swap had stopped it.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .cancellation import CancellationError, CancellationToken, new_token
from .checksum import read_token, tokens_match, write_token
from .config import Config
from .errors import CriticalRestoreError, IndexKeeperError, UpdateInProgressError
from .fetcher import ArchiveFetcher
from .supervisor import ProcessSupervisor
from .swapper import DatasetSwapper, is_valid_dataset

logger = logging.getLogger(__name__)

SETTLE_POLL_SECONDS = 0.5


# =============================================================================
# DATA MODELS
# =============================================================================

class IndexState(str, Enum):
    """Where the local dataset stands relative to the remote one."""
    NO_INDEX = "no_index"
    INDEX_STALE = "index_stale"
    INDEX_CURRENT = "index_current"
    UPDATE_IN_FLIGHT = "update_in_flight"


class UpdateStatus(str, Enum):
    """Outcome of a background update."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UpdateResult:
    """Record of one background update."""
    task_id: str
    target_token: str
    status: UpdateStatus = UpdateStatus.RUNNING
    error: Optional[str] = None
    error_kind: Optional[str] = None
    steps_completed: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    def fail(self, error: Exception) -> None:
        self.status = UpdateStatus.FAILED
        self.error = str(error)
        self.error_kind = getattr(error, "kind", type(error).__name__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "target_token": self.target_token,
            "status": self.status.value,
            "error": self.error,
            "error_kind": self.error_kind,
            "steps_completed": list(self.steps_completed),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


def exit_code_for(returncode: int) -> int:
    """Map a child return code to a shell-style exit code."""
    return returncode if returncode >= 0 else 128 - returncode


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class UpdateOrchestrator:
    """
    Owns the dataset directory and the server process for one host.

    Usage:
        orchestrator = UpdateOrchestrator(config, server_args=sys.argv[1:])
        exit_code = await orchestrator.run()
    """

    def __init__(
        self,
        config: Config,
        server_args: Sequence[str] = (),
        supervisor: Optional[ProcessSupervisor] = None,
        fetcher: Optional[ArchiveFetcher] = None,
        swapper: Optional[DatasetSwapper] = None,
    ):
        """
        Args:
            config: Loaded configuration.
            server_args: Arguments passed verbatim to every server launch.
            supervisor: Process supervisor (built from config if None).
            fetcher: Archive fetcher (built from config if None).
            swapper: Dataset swapper (built around the supervisor if None).
        """
        self.config = config
        self.paths = config.paths
        self.server_args = list(server_args)
        self.supervisor = supervisor or ProcessSupervisor.from_config(config.server, config.paths)
        self.fetcher = fetcher or ArchiveFetcher.from_config(config.archive)
        self.swapper = swapper or DatasetSwapper(self.supervisor, search_depth=config.update.search_depth)

        self._state = IndexState.NO_INDEX
        self._update_task: Optional[asyncio.Task] = None
        self._cancellation: Optional[CancellationToken] = None
        self._current_update: Optional[UpdateResult] = None
        self._last_update: Optional[UpdateResult] = None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> IndexState:
        if self.update_in_flight:
            return IndexState.UPDATE_IN_FLIGHT
        return self._state

    @property
    def update_task(self) -> Optional[asyncio.Task]:
        return self._update_task

    @property
    def update_in_flight(self) -> bool:
        return self._update_task is not None and not self._update_task.done()

    @property
    def current_update(self) -> Optional[UpdateResult]:
        return self._current_update if self.update_in_flight else None

    @property
    def last_update(self) -> Optional[UpdateResult]:
        return self._last_update

    # =========================================================================
    # STARTUP
    # =========================================================================

    async def start(self) -> IndexState:
        """
        Bring the dataset and the server up.

        Raises:
            IndexKeeperError: Initial download failed or the server could not
                              be started. Both are fatal.
        """
        paths = self.paths
        paths.data_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self.swapper.recover_interrupted_swap, paths.live_dir)
        await self.remove_temp_dir()

        latest = await self.fetcher.fetch_version_token()
        if latest is not None:
            self._persist_token(paths.latest_token_path, latest)

        if not is_valid_dataset(paths.live_dir):
            self._state = IndexState.NO_INDEX
            await self._initial_fetch(latest)
            await self._start_server()
            self._state = IndexState.INDEX_CURRENT
            return self.state

        logger.info("Search index exists, checking for updates")
        last_started = read_token(paths.last_started_token_path)
        if latest is None:
            logger.warning("Could not verify checksum, starting with existing index")
            self._state = IndexState.INDEX_CURRENT
        elif last_started is None:
            logger.info("First time setup - marking current version %s", latest)
            self._persist_token(paths.last_started_token_path, latest)
            self._state = IndexState.INDEX_CURRENT
        elif tokens_match(latest, last_started):
            logger.info("Index is up to date (%s)", latest)
            self._state = IndexState.INDEX_CURRENT
        else:
            logger.info("Checksum mismatch detected - new version available (%s -> %s)", last_started, latest)
            self._state = IndexState.INDEX_STALE

        await self._start_server()
        if self._state is IndexState.INDEX_STALE:
            logger.info("Started current instance while preparing update")
            self.launch_update(latest)
        return self.state

    async def _initial_fetch(self, latest: Optional[str]) -> None:
        logger.info("No search index found, downloading initial version")
        await self.fetcher.fetch(
            self.paths.data_dir,
            is_temporary=False,
            cancellation_token=new_token("initial"),
        )
        await asyncio.to_thread(self.swapper.install_initial, self.paths.data_dir, self.paths.live_dir)
        if latest is not None:
            self._persist_token(self.paths.last_started_token_path, latest)
        logger.info("Initial download completed")

    async def _start_server(self) -> int:
        return await self.supervisor.start(self.server_args)

    # =========================================================================
    # BACKGROUND UPDATE
    # =========================================================================

    def launch_update(self, token: str) -> asyncio.Task:
        """
        Start a background update towards the dataset identified by ``token``.

        Raises:
            UpdateInProgressError: Another update is still in flight.
        """
        if self.update_in_flight:
            raise UpdateInProgressError(
                f"Update {self._current_update.task_id} is already in progress"
            )

        cancellation = new_token("update")
        result = UpdateResult(task_id=cancellation.task_id, target_token=token)
        self._cancellation = cancellation
        self._current_update = result
        self._update_task = asyncio.create_task(
            self._run_update(result, cancellation),
            name=cancellation.task_id,
        )
        self._update_task.add_done_callback(self._on_update_done)
        logger.info("Launched background update %s", cancellation.task_id)
        return self._update_task

    def cancel_update(self) -> bool:
        """Ask the in-flight update to stop at its next checkpoint."""
        if not self.update_in_flight or self._cancellation is None:
            return False
        self._cancellation.cancel()
        return True

    def _on_update_done(self, task: asyncio.Task) -> None:
        result = self._current_update
        if result is None:
            return
        if task.cancelled():
            result.status = UpdateStatus.CANCELLED
            result.completed_at = result.completed_at or _now_iso()
        self._last_update = result

    async def _run_update(self, result: UpdateResult, cancellation: CancellationToken) -> UpdateResult:
        paths = self.paths
        settle = self.config.update.settle_delay_seconds
        try:
            logger.info("Waiting %.0f seconds for service to stabilize before update...", settle)
            await self._settle(settle, cancellation)

            logger.info("Starting background update process")
            await self.remove_temp_dir()
            logger.info("Downloading new index to temporary location...")
            await self.fetcher.fetch(paths.temp_dir, is_temporary=True, cancellation_token=cancellation)
            result.steps_completed.append("fetch")
            cancellation.check_cancelled()

            await self.swapper.swap(paths.temp_dir, paths.live_dir)
            result.steps_completed.append("swap")
            self._persist_token(paths.last_started_token_path, result.target_token)

            logger.info("Update downloaded successfully, restarting service")
            await self._start_server()
            result.steps_completed.append("restart")

            result.status = UpdateStatus.SUCCESS
            self._state = IndexState.INDEX_CURRENT
            logger.info("Service restarted with new index")
        except CancellationError:
            result.status = UpdateStatus.CANCELLED
            logger.info("Background update %s cancelled", result.task_id)
        except asyncio.CancelledError:
            result.status = UpdateStatus.CANCELLED
            logger.info("Background update %s force-cancelled", result.task_id)
            raise
        except CriticalRestoreError as e:
            result.fail(e)
            logger.critical("%s", e)
        except IndexKeeperError as e:
            result.fail(e)
            logger.error("Background update failed: %s", e)
            logger.info("Hot swap failed, service continues with current version")
        except Exception as e:
            result.fail(e)
            logger.exception("Background update failed with unexpected error")
        finally:
            result.completed_at = _now_iso()

        if result.status is UpdateStatus.FAILED:
            await self._recover_server()
        await self.remove_temp_dir()
        return result

    @staticmethod
    async def _settle(seconds: float, cancellation: CancellationToken) -> None:
        """Sleep in short slices so a cancel request is seen promptly."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        while True:
            cancellation.check_cancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, SETTLE_POLL_SECONDS))

    async def _recover_server(self) -> None:
        """Restart the server if a failed update left it stopped."""
        if not self.supervisor.stop_requested or self.supervisor.is_active():
            return
        if not is_valid_dataset(self.paths.live_dir):
            logger.critical("CRITICAL: no valid dataset at %s, cannot restart server", self.paths.live_dir)
            return
        logger.info("Restarting server with the previous dataset")
        try:
            await self._start_server()
        except IndexKeeperError as e:
            logger.error("Failed to restart service after update: %s", e)

    # =========================================================================
    # PERIODIC CHECK
    # =========================================================================

    async def check_for_update(self) -> bool:
        """
        Compare the remote checksum with the one last started.

        Returns:
            True if a background update was launched.
        """
        if self.update_in_flight:
            logger.debug("Update already in flight, skipping check")
            return False

        latest = await self.fetcher.fetch_version_token()
        if latest is None:
            return False
        self._persist_token(self.paths.latest_token_path, latest)

        last_started = read_token(self.paths.last_started_token_path)
        if last_started is None:
            self._persist_token(self.paths.last_started_token_path, latest)
            return False
        if tokens_match(latest, last_started):
            logger.debug("Index is up to date (%s)", latest)
            return False

        logger.info("New dataset version available: %s -> %s", last_started, latest)
        self._state = IndexState.INDEX_STALE
        self.launch_update(latest)
        return True

    async def _periodic_check(self, interval: float) -> None:
        """Background task for periodic update checking."""
        while True:
            await asyncio.sleep(interval)
            if not self.supervisor.is_active():
                continue
            try:
                await self.check_for_update()
            except Exception as e:
                logger.warning("Periodic update check failed: %s", e)

    # =========================================================================
    # SERVING
    # =========================================================================

    async def wait_for_server(self) -> int:
        """
        Block while the foreground server runs.

        Stops made by a background swap are followed: the wait re-attaches to
        the restarted server.

        Returns:
            Exit code to terminate with.
        """
        while True:
            process = self.supervisor.process
            if process is None:
                logger.error("No server process to wait for")
                return 1

            returncode = await process.wait()
            if self.supervisor.stop_requested or self.supervisor.process is not process:
                if self.update_in_flight:
                    logger.info("Server stopped for dataset swap, waiting for update to finish")
                    await asyncio.wait({self._update_task})
                if self.supervisor.is_active():
                    continue
                logger.error("Server is not running after background update")
                return 1

            logger.warning("Server exited with code %s", returncode)
            return exit_code_for(returncode)

    async def _serve(self) -> int:
        try:
            await self.start()
        except IndexKeeperError as e:
            logger.error("Startup failed: %s", e)
            return 1
        except Exception:
            logger.exception("Startup failed with unexpected error")
            return 1

        periodic = None
        interval = self.config.update.check_interval_hours * 3600
        if interval > 0:
            periodic = asyncio.create_task(self._periodic_check(interval), name="periodic-check")
        try:
            return await self.wait_for_server()
        finally:
            if periodic is not None:
                periodic.cancel()
                await asyncio.gather(periodic, return_exceptions=True)

    async def run(self) -> int:
        """
        Run the whole supervisor lifecycle until shutdown.

        Returns:
            0 on clean shutdown, 1 on fatal startup failure, otherwise the
            exit code of a server that stopped on its own.
        """
        from .shutdown import ShutdownCoordinator
        from .status import StatusServer

        coordinator = ShutdownCoordinator(
            orchestrator=self,
            supervisor=self.supervisor,
            temp_dir=self.paths.temp_dir,
            task_grace=self.config.update.task_stop_grace_seconds,
        )
        coordinator.install_signal_handlers()

        status_server = None
        if self.config.status.enabled:
            status_server = StatusServer(self, self.config.status.host, self.config.status.port)
            await status_server.start()

        serve = asyncio.create_task(self._serve(), name="serve")
        shutdown_requested = asyncio.create_task(coordinator.wait(), name="shutdown-wait")
        exit_code = 0
        try:
            done, _ = await asyncio.wait({serve, shutdown_requested}, return_when=asyncio.FIRST_COMPLETED)
            if coordinator.requested:
                # A server killed by the same signal still counts as a clean stop
                logger.info("Received shutdown signal, cleaning up...")
            elif serve in done:
                exit_code = serve.result()
        finally:
            for task in (serve, shutdown_requested):
                if not task.done():
                    task.cancel()
            await asyncio.gather(serve, shutdown_requested, return_exceptions=True)
            await coordinator.shutdown()
            if status_server is not None:
                await status_server.stop()
            coordinator.remove_signal_handlers()
        return exit_code

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def remove_temp_dir(self) -> None:
        temp_dir = self.paths.temp_dir
        if temp_dir.exists():
            logger.debug("Removing temp directory %s", temp_dir)
            await asyncio.to_thread(shutil.rmtree, temp_dir, True)

    @staticmethod
    def _persist_token(path: Path, token: str) -> bool:
        try:
            write_token(path, token)
            return True
        except (OSError, ValueError) as e:
            logger.error("Failed to persist checksum to %s: %s", path, e)
            return False
