# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 The IndexKeeper Authors

"""
IndexKeeper Status API Tests

Tests for the FastAPI status endpoints.
Run with: pytest tests/test_api.py -v
"""

import pytest
from fastapi.testclient import TestClient

TOKEN_A = "0123456789abcdef0123456789abcdef"
TOKEN_B = "fedcba9876543210fedcba9876543210"


class StubSupervisor:
    def __init__(self, running=True, pid=4242):
        self.running = running
        self._pid = pid

    @property
    def pid(self):
        return self._pid

    def is_active(self):
        return self.running


class StubOrchestrator:
    """Exposes the attributes the status app reads."""

    def __init__(self, paths, running=True, in_flight=False):
        from indexkeeper.orchestrator import IndexState

        self.paths = paths
        self.supervisor = StubSupervisor(running=running)
        self.update_in_flight = in_flight
        self.state = IndexState.UPDATE_IN_FLIGHT if in_flight else IndexState.INDEX_CURRENT
        self.current_update = None
        self.last_update = None


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def paths(tmp_path):
    from indexkeeper.config import PathsConfig
    return PathsConfig(data_dir=tmp_path / "data")


def _client(orchestrator):
    from indexkeeper.status import create_status_app
    return TestClient(create_status_app(orchestrator))


# =============================================================================
# HEALTH ENDPOINT TESTS
# =============================================================================

def test_health_ok(paths):
    """Test health reports a running server."""
    response = _client(StubOrchestrator(paths)).get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["serverRunning"] is True
    assert data["serverPid"] == 4242
    assert data["indexState"] == "index_current"
    assert "version" in data


def test_health_updating(paths):
    """Test health stays 200 while a background update runs."""
    response = _client(StubOrchestrator(paths, in_flight=True)).get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "updating"
    assert response.json()["indexState"] == "update_in_flight"


def test_health_down(paths):
    """Test health returns 503 when the server is not running."""
    response = _client(StubOrchestrator(paths, running=False)).get("/health")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "down"
    assert data["serverRunning"] is False
    assert data["serverPid"] is None


def test_health_response_types(paths):
    """Test health endpoint returns correct types."""
    data = _client(StubOrchestrator(paths)).get("/health").json()

    assert isinstance(data["status"], str)
    assert isinstance(data["serverRunning"], bool)
    assert isinstance(data["serverPid"], int)
    assert isinstance(data["version"], str)


# =============================================================================
# STATUS ENDPOINT TESTS
# =============================================================================

def test_status_reports_tokens_and_dataset(paths, write_tree):
    """Test status exposes checksums and dataset validity."""
    from indexkeeper.checksum import write_token

    write_tree(paths.live_dir, {"data.bin": b"x"})
    write_token(paths.latest_token_path, TOKEN_B)
    write_token(paths.last_started_token_path, TOKEN_A)

    response = _client(StubOrchestrator(paths)).get("/v1/status")

    assert response.status_code == 200
    data = response.json()
    assert data["datasetValid"] is True
    assert data["latestToken"] == TOKEN_B
    assert data["lastStartedToken"] == TOKEN_A
    assert data["updateInFlight"] is False
    assert data["currentUpdate"] is None
    assert data["lastUpdate"] is None


def test_status_without_dataset(paths):
    """Test status on an empty data root."""
    data = _client(StubOrchestrator(paths, running=False)).get("/v1/status").json()

    assert data["datasetValid"] is False
    assert data["latestToken"] is None
    assert data["serverRunning"] is False


def test_status_reports_updates(paths):
    """Test current and last update records are serialized."""
    from indexkeeper.errors import InvalidCandidateStructureError
    from indexkeeper.orchestrator import UpdateResult

    last = UpdateResult(task_id="update-111111111111", target_token=TOKEN_A)
    last.fail(InvalidCandidateStructureError("no node_* directory"))
    last.completed_at = last.started_at
    current = UpdateResult(task_id="update-222222222222", target_token=TOKEN_B)
    current.steps_completed.append("fetch")

    orchestrator = StubOrchestrator(paths, in_flight=True)
    orchestrator.current_update = current
    orchestrator.last_update = last

    data = _client(orchestrator).get("/v1/status").json()

    assert data["updateInFlight"] is True
    assert data["currentUpdate"]["taskId"] == "update-222222222222"
    assert data["currentUpdate"]["status"] == "running"
    assert data["currentUpdate"]["stepsCompleted"] == ["fetch"]
    assert data["lastUpdate"]["status"] == "failed"
    assert data["lastUpdate"]["errorKind"] == "invalid_candidate_structure"
    assert data["lastUpdate"]["completedAt"] is not None


def test_unknown_route(paths):
    """Test undefined routes return 404."""
    assert _client(StubOrchestrator(paths)).get("/v1/unknown").status_code == 404
