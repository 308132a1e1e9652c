# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Shutdown Coordinator

Turns SIGTERM/SIGINT into an orderly stop: cancel the background update,
stop the server, remove temporary downloads. The sequence always runs to
completion, including in the middle of an update.
"""

import asyncio
import logging
import shutil
import signal
from pathlib import Path
from typing import Iterable, Optional

from .errors import ShutdownTimeoutError

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class ShutdownCoordinator:
    """Drives the stop sequence for the orchestrator and its server."""

    def __init__(self, orchestrator, supervisor, temp_dir: Path, task_grace: float = 10.0):
        """
        Args:
            orchestrator: Owner of the background update task.
            supervisor: Process supervisor of the server.
            temp_dir: Temporary download/extraction directory to remove.
            task_grace: Seconds a cancelled update gets before being force-cancelled.
        """
        self.orchestrator = orchestrator
        self.supervisor = supervisor
        self.temp_dir = Path(temp_dir)
        self.task_grace = task_grace
        self._requested = asyncio.Event()
        self._installed: Iterable[int] = ()
        self._completed = False

    @property
    def requested(self) -> bool:
        return self._requested.is_set()

    def install_signal_handlers(self, signals: Iterable[int] = HANDLED_SIGNALS) -> None:
        """Route termination signals to ``request`` on the running loop."""
        loop = asyncio.get_running_loop()
        installed = []
        for sig in signals:
            loop.add_signal_handler(sig, self.request, sig)
            installed.append(sig)
        self._installed = tuple(installed)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed = ()

    def request(self, sig: Optional[int] = None) -> None:
        """Ask for a shutdown. Safe to call more than once."""
        if sig is not None:
            logger.info("Received %s", signal.Signals(sig).name)
        self._requested.set()

    async def wait(self) -> None:
        await self._requested.wait()

    async def shutdown(self) -> None:
        """Stop the update task and the server, then clean up. Idempotent."""
        if self._completed:
            return
        try:
            await self._stop_update_task()
            try:
                await self.supervisor.stop()
            except ShutdownTimeoutError as e:
                logger.error("Server did not stop cleanly: %s", e)
        finally:
            if self.temp_dir.exists():
                logger.info("Removing temporary download directory %s", self.temp_dir)
                shutil.rmtree(self.temp_dir, ignore_errors=True)
            self._completed = True
        logger.info("Shutdown complete")

    async def _stop_update_task(self) -> None:
        task = self.orchestrator.update_task
        if task is None or task.done():
            return

        logger.info("Stopping background update process...")
        self.orchestrator.cancel_update()
        done, _ = await asyncio.wait({task}, timeout=self.task_grace)
        if done:
            return

        logger.warning("Background update did not stop within %.0fs, force cancelling", self.task_grace)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
