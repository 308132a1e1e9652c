# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 The IndexKeeper Authors

"""
IndexKeeper Configuration Tests

Tests for configuration loading and validation.
Run with: pytest tests/test_config.py -v
"""

import logging

import pytest
from pathlib import Path


def test_config_loads_defaults():
    """Test configuration loads with default values."""
    from indexkeeper.config import Config

    config = Config()

    assert config.paths.data_dir == Path("/photon/photon_data")
    assert config.paths.node_dir_name == "node_1"
    assert config.archive.url.endswith("photon-db-latest.tar.bz2")
    assert config.archive.min_free_gb == 250
    assert config.server.command == ["java", "-jar", "photon.jar"]
    assert config.update.settle_delay_seconds == 15
    assert config.status.enabled is False


def test_config_from_yaml(tmp_path):
    """Test configuration loads from YAML file."""
    from indexkeeper.config import load_config

    yaml_content = """
paths:
  data_dir: /srv/index
  pid_file: /run/index.pid

archive:
  url: https://mirror.example.org/db.tar.gz
  min_free_gb: 10
  download_attempts: 5

server:
  command: [/opt/server/bin/run]
  working_dir: null

update:
  settle_delay_seconds: 1
  check_interval_hours: 0

status:
  enabled: true
  port: 9000

logging:
  level: DEBUG
"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(yaml_content)

    config = load_config(str(config_file))

    assert config.paths.data_dir == Path("/srv/index")
    assert config.paths.pid_file == Path("/run/index.pid")
    assert config.archive.url == "https://mirror.example.org/db.tar.gz"
    assert config.archive.checksum_url == "https://mirror.example.org/db.tar.gz.md5"
    assert config.archive.download_attempts == 5
    assert config.server.command == ["/opt/server/bin/run"]
    assert config.server.working_dir is None
    assert config.update.check_interval_hours == 0
    assert config.status.enabled is True
    assert config.status.port == 9000
    assert config.logging.level == "DEBUG"


def test_config_from_env_var(tmp_path, monkeypatch):
    """Test INDEXKEEPER_CONFIG selects the config file."""
    from indexkeeper.config import load_config

    config_file = tmp_path / "env.yaml"
    config_file.write_text("update:\n  settle_delay_seconds: 42\n")
    monkeypatch.setenv("INDEXKEEPER_CONFIG", str(config_file))

    config = load_config()

    assert config.update.settle_delay_seconds == 42


def test_config_missing_file_uses_defaults(tmp_path):
    """Test a missing config file falls back to defaults."""
    from indexkeeper.config import load_config

    config = load_config(str(tmp_path / "absent.yaml"))

    assert config.paths.node_dir_name == "node_1"


def test_config_invalid_file_uses_defaults(tmp_path):
    """Test an invalid config file falls back to defaults."""
    from indexkeeper.config import load_config

    config_file = tmp_path / "bad.yaml"
    config_file.write_text("archive:\n  download_attempts: 0\n")

    config = load_config(str(config_file))

    assert config.archive.download_attempts == 3


def test_config_derived_paths():
    """Test derived dataset and token paths."""
    from indexkeeper.config import PathsConfig

    paths = PathsConfig(data_dir=Path("/data"))

    assert paths.live_dir == Path("/data/node_1")
    assert paths.temp_dir == Path("/data/temp_download")
    assert paths.latest_token_path == Path("/data/current.md5")
    assert paths.last_started_token_path == Path("/data/last_known.md5")


def test_config_path_conversion():
    """Test configuration converts paths correctly."""
    from indexkeeper.config import Config, PathsConfig

    paths = PathsConfig(data_dir="/data", pid_file="/tmp/x.pid")

    assert isinstance(paths.data_dir, Path)
    assert isinstance(paths.pid_file, Path)
    assert isinstance(Config().server.working_dir, Path)


def test_archive_retry_policies():
    """Test the archive section builds its retry policies."""
    from indexkeeper.config import ArchiveConfig

    archive = ArchiveConfig(download_attempts=4, download_retry_delay=5, download_backoff=3)

    download = archive.download_policy()
    assert download.max_attempts == 4
    assert download.delay_for(1) == 5
    assert download.delay_for(2) == 15

    checksum = archive.checksum_policy()
    assert checksum.max_attempts == 3
    assert checksum.delay_for(1) == checksum.delay_for(3) == 2


def test_archive_min_free_bytes():
    """Test free space requirement is converted to bytes."""
    from indexkeeper.config import ArchiveConfig

    assert ArchiveConfig(min_free_gb=2).min_free_bytes == 2 * 1024 ** 3
    assert ArchiveConfig(min_free_gb=0).min_free_bytes == 0


def test_config_rejects_invalid_values():
    """Test validation rejects out-of-range values."""
    from pydantic import ValidationError
    from indexkeeper.config import ArchiveConfig, UpdateConfig

    with pytest.raises(ValidationError):
        ArchiveConfig(download_attempts=0)
    with pytest.raises(ValidationError):
        UpdateConfig(settle_delay_seconds=-1)


def test_config_logging_defaults():
    """Test logging configuration defaults."""
    from indexkeeper.config import LoggingConfig

    config = LoggingConfig()

    assert config.level == "INFO"
    assert config.file is None


def test_setup_logging_quiets_access_logs():
    """Test setup_logging keeps access loggers at WARNING."""
    from indexkeeper.config import LoggingConfig, setup_logging

    setup_logging(LoggingConfig(level="DEBUG"))

    assert logging.getLogger("aiohttp.access").level == logging.WARNING
    assert logging.getLogger("uvicorn.access").level == logging.WARNING
    assert logging.getLogger("uvicorn").level == logging.DEBUG
