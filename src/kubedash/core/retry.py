#!/usr/bin/env python3
"""
KUBEDASH TIMING GATES
---------------------
Cycle deadline and bounded retry with exponential backoff.

Author: KubeDash Team
Date: 2026-10-19
"""

import time
import logging
from typing import Callable, Optional, Tuple, Type, TypeVar

from kubedash.core.errors import CycleTimeout

logger = logging.getLogger("kubedash.retry")

T = TypeVar("T")


class Deadline:
    """Wall-clock limit for one reconciliation cycle."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self._clock() >= self.expires_at

    def check(self, phase: str):
        if self.expired:
            raise CycleTimeout(f"Cycle deadline exceeded during {phase}")


def retry(operation: Callable[[], T],
          retry_on: Tuple[Type[BaseException], ...],
          attempts: int = 3,
          backoff: float = 0.5,
          description: str = "operation",
          deadline: Optional[Deadline] = None,
          sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Runs `operation` up to `attempts` times, sleeping backoff * 2**n between
    tries. The last exception is re-raised unchanged once attempts run out
    or the deadline leaves no room for another try.
    """
    for attempt in range(1, attempts + 1):
        if deadline is not None:
            deadline.check(description)
        try:
            return operation()
        except retry_on as e:
            if attempt >= attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            if deadline is not None:
                remaining = deadline.remaining()
                if remaining is not None and remaining <= delay:
                    raise
            logger.warning(f"{description} failed (attempt {attempt}/{attempts}): {e}. Retrying in {delay:.2f}s")
            sleep(delay)
    raise AssertionError("unreachable")
