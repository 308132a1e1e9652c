# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Cancellation

Cooperative cancellation for background dataset updates. The token is
checked between update stages and between archive members during
extraction, which runs in a worker thread.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


class CancellationError(Exception):
    """Raised when a cancellation token detects cancellation."""
    pass


@dataclass
class CancellationToken:
    """
    Token for signaling cancellation of a background update.

    Thread-safe: can be checked from both async code and extraction threads.
    """
    task_id: str
    _cancelled: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def cancel(self) -> None:
        """Mark this task as cancelled."""
        with self._lock:
            if not self._cancelled:
                self._cancelled = True
                logger.info("Cancellation requested for: %s", self.task_id)

    def is_cancelled(self) -> bool:
        """Check if cancellation was requested (thread-safe)."""
        with self._lock:
            return self._cancelled

    def check_cancelled(self) -> None:
        """
        Raise CancellationError if cancelled.

        Use this between update stages to abort early.
        """
        if self.is_cancelled():
            raise CancellationError(f"Task {self.task_id} was cancelled")


def new_token(prefix: str = "update", task_id: Optional[str] = None) -> CancellationToken:
    """Create a token with a generated id unless one is given."""
    if task_id is None:
        task_id = f"{prefix}-{uuid.uuid4().hex[:12]}"
    return CancellationToken(task_id=task_id)
