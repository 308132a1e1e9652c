# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Configuration Module

Handles loading and managing supervisor configuration from YAML files.
"""

import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .retry import RetryPolicy

logger = logging.getLogger(__name__)

GIGABYTE = 1024 ** 3


class PathsConfig(BaseModel):
    """Filesystem layout under the data root."""
    data_dir: Path = Field(default=Path("/photon/photon_data"), description="Data root holding the dataset and token files")
    node_dir_name: str = Field(default="node_1", description="Name of the live dataset directory")
    temp_dir_name: str = Field(default="temp_download", description="Temporary download/extraction directory name")
    latest_token_file: str = Field(default="current.md5", description="Latest checksum fetched from the remote")
    last_started_token_file: str = Field(default="last_known.md5", description="Checksum of the dataset the server was last started with")
    pid_file: Path = Field(default=Path("/tmp/photon.pid"), description="Where the server PID is persisted")

    @property
    def live_dir(self) -> Path:
        return self.data_dir / self.node_dir_name

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / self.temp_dir_name

    @property
    def latest_token_path(self) -> Path:
        return self.data_dir / self.latest_token_file

    @property
    def last_started_token_path(self) -> Path:
        return self.data_dir / self.last_started_token_file


class ArchiveConfig(BaseModel):
    """Remote archive and download settings."""
    url: str = Field(
        default="https://download1.graphhopper.com/public/experimental/photon-db-latest.tar.bz2",
        description="Dataset archive URL",
    )
    checksum_suffix: str = Field(default=".md5", description="Suffix appended to the archive URL for the checksum")
    user_agent: str = Field(default="indexkeeper", description="User-Agent header for all requests")
    min_free_gb: float = Field(default=250.0, ge=0, description="Required free space: download + extraction + margin")
    download_timeout: int = Field(default=300, ge=1, description="Per-attempt connect/read timeout in seconds")
    download_attempts: int = Field(default=3, ge=1, description="Max archive download attempts")
    download_retry_delay: float = Field(default=10.0, ge=0, description="Delay after the first failed download attempt")
    download_backoff: float = Field(default=2.0, ge=1.0, description="Delay multiplier between download attempts")
    checksum_timeout: int = Field(default=30, ge=1, description="Checksum request timeout in seconds")
    checksum_attempts: int = Field(default=3, ge=1, description="Max checksum download attempts")
    checksum_retry_delay: float = Field(default=2.0, ge=0, description="Fixed delay between checksum attempts")
    chunk_size: int = Field(default=1024 * 1024, ge=1024, description="Download chunk size in bytes")

    @property
    def checksum_url(self) -> str:
        return self.url + self.checksum_suffix

    @property
    def min_free_bytes(self) -> int:
        return int(self.min_free_gb * GIGABYTE)

    def download_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.download_attempts,
            delay_seconds=self.download_retry_delay,
            backoff=self.download_backoff,
        )

    def checksum_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.checksum_attempts,
            delay_seconds=self.checksum_retry_delay,
        )


class ServerConfig(BaseModel):
    """Supervised server process settings."""
    command: List[str] = Field(default_factory=lambda: ["java", "-jar", "photon.jar"], description="Server command; pass-through args are appended")
    working_dir: Optional[Path] = Field(default=Path("/photon"), description="Working directory for the server (null = inherit)")
    startup_wait_seconds: float = Field(default=3.0, ge=0, description="Wait before confirming the server survived launch")
    stop_grace_seconds: float = Field(default=60.0, ge=0, description="Grace period after SIGTERM before SIGKILL")
    kill_wait_seconds: float = Field(default=2.0, ge=0, description="Wait after SIGKILL before giving up")
    poll_interval_seconds: float = Field(default=1.0, gt=0, description="Liveness poll interval while stopping")


class UpdateConfig(BaseModel):
    """Background update behaviour."""
    settle_delay_seconds: float = Field(default=15.0, ge=0, description="Wait after server startup before a background update begins")
    task_stop_grace_seconds: float = Field(default=10.0, ge=0, description="Wait for a cancelled update before force-cancelling it")
    check_interval_hours: float = Field(default=24.0, ge=0, description="Periodic remote check interval (0 = only at startup)")
    search_depth: int = Field(default=3, ge=1, description="How deep to search an extracted archive for the node directory")


class StatusConfig(BaseModel):
    """Optional status HTTP endpoint."""
    enabled: bool = Field(default=False, description="Serve /health and /v1/status")
    host: str = Field(default="0.0.0.0", description="Status endpoint bind address")
    port: int = Field(default=2323, description="Status endpoint port")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level (WARNING, INFO, DEBUG)")
    file: Optional[Path] = Field(default=None, description="Log file path (null = console only)")


class Config(BaseModel):
    """Main configuration container."""
    paths: PathsConfig = Field(default_factory=PathsConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    update: UpdateConfig = Field(default_factory=UpdateConfig)
    status: StatusConfig = Field(default_factory=StatusConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file. If None, uses INDEXKEEPER_CONFIG env var
              or defaults to ./config.yaml

    Returns:
        Config object with loaded settings
    """
    if path is None:
        path = os.environ.get("INDEXKEEPER_CONFIG", "./config.yaml")

    config_path = Path(path)

    if config_path.exists():
        logger.info("Loading configuration from: %s", config_path)
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}

            return Config(
                paths=PathsConfig(**data.get("paths", {})),
                archive=ArchiveConfig(**data.get("archive", {})),
                server=ServerConfig(**data.get("server", {})),
                update=UpdateConfig(**data.get("update", {})),
                status=StatusConfig(**data.get("status", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except Exception as e:
            logger.warning("Failed to load config file: %s. Using defaults.", e)
            return Config()
    else:
        logger.info("Config file not found at %s. Using defaults.", config_path)
        return Config()


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure logging based on configuration.

    Args:
        config: Logging configuration settings
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    # Setup handlers - always include console
    handlers = [logging.StreamHandler()]

    if config.file:
        try:
            config.file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(config.file))
        except Exception as e:
            # If file logging fails, continue with console-only logging
            print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    if config.file:
        logger.info("Logging configured: level=%s, file=%s", config.level, config.file)
    else:
        logger.info("Logging configured: level=%s (console only)", config.level)
