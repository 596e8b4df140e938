"""
Rolling latency statistics over a sliding time window.

Samples older than the window are purged on every read and write, so memory is
bounded by the sample rate times the window length.
"""

import math
import time
from collections import deque
from collections.abc import Callable

from genguard.core.config.constants import DEFAULT_LATENCY_SECONDS, STATS_WINDOW_SECONDS


class RollingStats:
    """
    Time-windowed sample buffer producing nearest-rank percentiles.

    Single-writer: callers that share an instance across threads serialize
    access themselves (the health tracker does so under its lock).

    Usage:
        stats = RollingStats(window_seconds=3600)
        stats.add_sample(42.5)
        p95 = stats.percentile(95)
    """

    def __init__(
        self,
        window_seconds: float = STATS_WINDOW_SECONDS,
        default_value: float = DEFAULT_LATENCY_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = window_seconds
        self.default_value = default_value
        self._clock = clock
        self._samples: deque[tuple[float, float]] = deque()

    def add_sample(self, value: float) -> None:
        now = self._clock()
        self._samples.append((now, float(value)))
        self._purge(now)

    def percentile(self, p: float) -> float:
        """
        Nearest-rank percentile of the samples inside the window.

        Returns ``default_value`` when the window is empty.
        """
        if not 0 <= p <= 100:
            raise ValueError("percentile must be between 0 and 100")
        self._purge(self._clock())
        if not self._samples:
            return self.default_value

        ordered = sorted(value for _, value in self._samples)
        index = math.ceil(len(ordered) * p / 100) - 1
        return ordered[max(0, index)]

    def count(self) -> int:
        self._purge(self._clock())
        return len(self._samples)

    def clear(self) -> None:
        self._samples.clear()

    def _purge(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()
