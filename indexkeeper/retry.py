# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 Andrew Wyatt (Fewtarius)

"""
IndexKeeper Retry Policy

Bounded retry with fixed or increasing backoff. Each call site gets its
own policy: archive downloads use few attempts with a growing delay,
checksum fetches use a short fixed delay.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """All attempts of a retried operation failed."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between."""
    max_attempts: int = 3
    delay_seconds: float = 2.0
    backoff: float = 1.0  # 1.0 = fixed delay, >1.0 = increasing

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0 or self.backoff < 1.0:
            raise ValueError("delay_seconds must be >= 0 and backoff >= 1.0")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.delay_seconds * (self.backoff ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> T:
        """
        Await ``operation()`` until it succeeds or attempts run out.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt.
            description: Human-readable name used in logs and the final error.
            retry_on: Exception types that count as a failed attempt. Anything
                      else propagates immediately.

        Returns:
            The operation's result.

        Raises:
            RetryExhaustedError: If every attempt failed.
        """
        last_error: BaseException = RuntimeError("no attempts made")
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except retry_on as e:
                last_error = e
                if attempt >= self.max_attempts:
                    break
                wait = self.delay_for(attempt)
                logger.warning(
                    "%s attempt %d/%d failed: %s; retrying in %.1fs",
                    description, attempt, self.max_attempts, e, wait,
                )
                await asyncio.sleep(wait)

        logger.error("%s failed after %d attempts: %s", description, self.max_attempts, last_error)
        raise RetryExhaustedError(description, self.max_attempts, last_error)
