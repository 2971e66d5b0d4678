"""Batch pacing: inter-request delay, rate-limit backoff and a wall-clock budget.

Example:
    >>> pacer = BatchPacer(base_delay=12.0, max_delay=60.0, halt_after=3, sleep=lambda s: None)
    >>> pacer.record_rate_limit(retry_after=5)
    >>> pacer.current_delay()
    24.0
    >>> pacer.record_rate_limit(); pacer.record_rate_limit()
    >>> pacer.should_halt
    True
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class BatchPacer:
    """Pacing state for one batch invocation.

    Delay before the next request =
    ``min(max(base_delay * multiplier ** consecutive_rate_limits, retry_after + 1), max_delay)``.

    Attributes:
        base_delay: Fixed delay between requests in seconds
        max_delay: Cap for the backoff delay
        multiplier: Backoff multiplier per consecutive rate limit
        halt_after: Consecutive rate limits after which the batch stops
        time_budget: Wall-clock seconds the batch may run (None = unbounded)
        sleep: Blocking sleep function
        clock: Monotonic clock
    """

    base_delay: float = 12.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    halt_after: int = 3
    time_budget: float | None = None
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    consecutive_rate_limits: int = field(default=0, init=False)
    _retry_hint: float = field(default=0.0, init=False, repr=False)
    _requests: int = field(default=0, init=False, repr=False)
    _started_at: float | None = field(default=None, init=False, repr=False)

    def start(self) -> None:
        self._started_at = self.clock()

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.clock() - self._started_at

    @property
    def out_of_time(self) -> bool:
        """True once the wall-clock budget is spent."""
        return self.time_budget is not None and self.elapsed >= self.time_budget

    @property
    def should_halt(self) -> bool:
        return self.consecutive_rate_limits >= self.halt_after

    def current_delay(self) -> float:
        delay = self.base_delay * (self.multiplier ** self.consecutive_rate_limits)
        delay = max(delay, self._retry_hint)
        return min(delay, self.max_delay)

    def wait_before_request(self) -> float:
        """Sleep before every request except the first. Returns the delay slept."""
        if self._started_at is None:
            self.start()
        self._requests += 1
        if self._requests == 1:
            return 0.0
        delay = self.current_delay()
        if delay > 0:
            logger.debug("pacer.sleep  seconds=%.1f  consecutive_rate_limits=%d", delay, self.consecutive_rate_limits)
            self.sleep(delay)
        return delay

    def record_rate_limit(self, retry_after: float | None = None) -> None:
        self.consecutive_rate_limits += 1
        if retry_after is not None and retry_after > 0:
            self._retry_hint = float(retry_after) + 1.0

    def record_success(self) -> None:
        self.consecutive_rate_limits = 0
        self._retry_hint = 0.0


__all__ = ["BatchPacer"]
