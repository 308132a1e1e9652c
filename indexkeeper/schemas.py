# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Pydantic Schemas

Response models for the status API.
"""

from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(default="ok", description="ok, updating or down")
    server_running: bool = Field(default=False, alias="serverRunning")
    server_pid: Optional[int] = Field(default=None, alias="serverPid")
    index_state: str = Field(default="no_index", alias="indexState")
    version: str = Field(default="0")

    model_config = ConfigDict(populate_by_name=True)


class UpdateInfo(BaseModel):
    """A background update, running or finished."""
    task_id: str = Field(..., alias="taskId")
    target_token: str = Field(..., alias="targetToken")
    status: str
    error: Optional[str] = None
    error_kind: Optional[str] = Field(default=None, alias="errorKind")
    steps_completed: List[str] = Field(default_factory=list, alias="stepsCompleted")
    started_at: str = Field(..., alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")

    model_config = ConfigDict(populate_by_name=True)


class StatusResponse(BaseModel):
    """Detailed supervisor status."""
    index_state: str = Field(..., alias="indexState")
    server_running: bool = Field(default=False, alias="serverRunning")
    server_pid: Optional[int] = Field(default=None, alias="serverPid")
    dataset_valid: bool = Field(default=False, alias="datasetValid")
    latest_token: Optional[str] = Field(default=None, alias="latestToken")
    last_started_token: Optional[str] = Field(default=None, alias="lastStartedToken")
    update_in_flight: bool = Field(default=False, alias="updateInFlight")
    current_update: Optional[UpdateInfo] = Field(default=None, alias="currentUpdate")
    last_update: Optional[UpdateInfo] = Field(default=None, alias="lastUpdate")

    model_config = ConfigDict(populate_by_name=True)
