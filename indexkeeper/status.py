# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Status API

Small read-only HTTP surface for container health checks:

  GET /health     - is the server up, is an update running
  GET /v1/status  - dataset state, checksums, current and last update
"""

import asyncio
import contextlib
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from . import __version__
from .checksum import read_token
from .schemas import HealthResponse, StatusResponse, UpdateInfo
from .swapper import is_valid_dataset

logger = logging.getLogger(__name__)


def _update_info(result) -> Optional[UpdateInfo]:
    if result is None:
        return None
    return UpdateInfo(**result.to_dict())


def create_status_app(orchestrator) -> FastAPI:
    """Build the status app around a running orchestrator."""
    app = FastAPI(
        title="IndexKeeper",
        description="Search index supervisor status",
        version=__version__,
    )

    @app.get("/health", response_model=HealthResponse, response_model_by_alias=True)
    async def health():
        """Health check; 503 while the server is down."""
        running = orchestrator.supervisor.is_active()
        if not running:
            status = "down"
        elif orchestrator.update_in_flight:
            status = "updating"
        else:
            status = "ok"

        body = HealthResponse(
            status=status,
            server_running=running,
            server_pid=orchestrator.supervisor.pid if running else None,
            index_state=orchestrator.state.value,
            version=__version__,
        )
        return JSONResponse(
            status_code=200 if running else 503,
            content=body.model_dump(by_alias=True),
        )

    @app.get("/v1/status", response_model=StatusResponse, response_model_by_alias=True)
    async def status():
        """Detailed dataset and update status."""
        paths = orchestrator.paths
        running = orchestrator.supervisor.is_active()
        return StatusResponse(
            index_state=orchestrator.state.value,
            server_running=running,
            server_pid=orchestrator.supervisor.pid if running else None,
            dataset_valid=is_valid_dataset(paths.live_dir),
            latest_token=read_token(paths.latest_token_path),
            last_started_token=read_token(paths.last_started_token_path),
            update_in_flight=orchestrator.update_in_flight,
            current_update=_update_info(orchestrator.current_update),
            last_update=_update_info(orchestrator.last_update),
        )

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the shutdown coordinator."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class StatusServer:
    """Runs the status app inside the supervisor's event loop."""

    def __init__(self, orchestrator, host: str, port: int):
        self.host = host
        self.port = port
        config = uvicorn.Config(
            create_status_app(orchestrator),
            host=host,
            port=port,
            log_level="warning",
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._server.serve(), name="status-server")
        logger.info("Status endpoint listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5)
        except asyncio.TimeoutError:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        except Exception as e:
            logger.warning("Status endpoint stopped with error: %s", e)
        self._task = None
