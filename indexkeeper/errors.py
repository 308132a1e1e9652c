# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Errors

Exception hierarchy shared by the fetcher, swapper, supervisor and
orchestrator. Every error carries a stable ``kind`` string that ends up
in update results and the status API.
"""


class IndexKeeperError(Exception):
    """Base class for all IndexKeeper failures."""
    kind = "error"


class InsufficientSpaceError(IndexKeeperError):
    """Destination filesystem has less free space than required."""
    kind = "insufficient_space"

    def __init__(self, path, available_bytes: int, required_bytes: int):
        self.path = path
        self.available_bytes = available_bytes
        self.required_bytes = required_bytes
        super().__init__(
            f"Insufficient disk space at {path}: need {required_bytes / 1024**3:.1f}GB, "
            f"have {available_bytes / 1024**3:.1f}GB"
        )


class DownloadError(IndexKeeperError):
    """Archive or checksum download failed after all attempts."""
    kind = "download_failure"


class ExtractionError(IndexKeeperError):
    """Downloaded archive could not be extracted."""
    kind = "extraction_failure"


class InvalidCandidateStructureError(IndexKeeperError):
    """Extracted dataset does not contain exactly one non-empty node directory."""
    kind = "invalid_candidate_structure"


class AlreadyRunningError(IndexKeeperError):
    """A live server process is already recorded in the pid file."""
    kind = "already_running"

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Server already running with PID {pid}")


class StartupFailureError(IndexKeeperError):
    """Server could not be launched or exited right after launch."""
    kind = "startup_failure"

    def __init__(self, message: str, returncode=None):
        self.returncode = returncode
        super().__init__(message)


class SwapError(IndexKeeperError):
    """Dataset swap failed; the previous dataset was restored."""
    kind = "swap_failure"


class CriticalRestoreError(IndexKeeperError):
    """Swap failed AND the backup could not be put back. Needs an operator."""
    kind = "critical_restore_failure"

    def __init__(self, live_dir, backup_dir, cause: Exception):
        self.live_dir = live_dir
        self.backup_dir = backup_dir
        super().__init__(
            f"CRITICAL: restore failed, could not move {backup_dir} back to {live_dir}: {cause}"
        )


class ShutdownTimeoutError(IndexKeeperError):
    """Process survived both the graceful and the forceful stop."""
    kind = "shutdown_timeout"

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Process {pid} may still be running after SIGKILL")


class UpdateInProgressError(IndexKeeperError):
    """A background update is already in flight."""
    kind = "update_in_progress"
