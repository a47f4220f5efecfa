"""Rate limit for partial-result writes during streaming."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

DEFAULT_MIN_INTERVAL_SECONDS = 0.5


class ProgressThrottle:
    """Allow at most one write per `min_interval_seconds`.

    One instance per work unit; the first call always passes.
    """

    def __init__(
        self,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._last: float | None = None
        self._lock = threading.Lock()

    def should_write(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._last is not None and now - self._last < self.min_interval_seconds:
                return False
            self._last = now
            return True

    def reset(self) -> None:
        with self._lock:
            self._last = None
