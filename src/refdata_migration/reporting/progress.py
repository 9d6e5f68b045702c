"""Rate-gated progress reporting for batch operations.

Batch completions can arrive hundreds of times per second; the reporter turns
them into snapshots at most once per interval (or once per count step) so
consumers are never flooded. The reported rate covers the window since the
previous snapshot, so operators see current throughput rather than a
lifetime average.
"""

import time
from collections.abc import Callable

from refdata_migration.migration.models import ProgressSnapshot

# Below this many records per second the ETA is reported as unknown
MIN_RATE_FOR_ETA = 0.01

ProgressCallback = Callable[[ProgressSnapshot], None]


class ProgressReporter:
    """Derives ProgressSnapshot values from a stream of processed-count deltas.

    Attributes:
        total: Number of records the operation will process
        interval: Minimum seconds between two snapshots
        count_step: Also emit once this many records accumulated since the last snapshot
        processed: Records processed so far
    """

    def __init__(
        self,
        total: int,
        interval: float = 3.0,
        count_step: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if total < 0:
            raise ValueError("total cannot be negative")
        if interval <= 0:
            raise ValueError("interval must be positive")
        if count_step is not None and count_step < 1:
            raise ValueError("count_step must be at least 1")

        self.total = total
        self.interval = interval
        self.count_step = count_step
        self.processed = 0
        self._clock = clock
        self._start = clock()
        self._last_emit_time = self._start
        self._last_emit_processed = 0
        self._last_rate = 0.0

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    def _is_due(self, now: float) -> bool:
        if now - self._last_emit_time >= self.interval:
            return True
        if self.count_step and self.processed - self._last_emit_processed >= self.count_step:
            return True
        # The observation that completes the operation always reports
        return self.processed >= self.total > self._last_emit_processed

    def _emit(self, now: float) -> ProgressSnapshot:
        window = now - self._last_emit_time
        items = self.processed - self._last_emit_processed
        rate = items / window if window > 0 else self._last_rate

        remaining = max(self.total - self.processed, 0)
        if remaining == 0:
            eta: float | None = 0.0
        elif rate > MIN_RATE_FOR_ETA:
            eta = remaining / rate
        else:
            eta = None

        self._last_emit_time = now
        self._last_emit_processed = self.processed
        self._last_rate = rate

        return ProgressSnapshot(
            processed=self.processed,
            total=self.total,
            elapsed=now - self._start,
            rate_per_second=rate,
            estimated_remaining=eta,
        )

    def observe(self, delta: int) -> ProgressSnapshot | None:
        """Add processed records; return a snapshot only when one is due.

        Args:
            delta: Records processed since the previous call

        Returns:
            ProgressSnapshot or None
        """
        if delta < 0:
            raise ValueError("Processed count cannot go backwards")
        self.processed += delta

        now = self._clock()
        if not self._is_due(now):
            return None
        return self._emit(now)

    def snapshot(self) -> ProgressSnapshot:
        """Produce a snapshot now, ignoring the emission gate."""
        return self._emit(self._clock())


def format_eta(seconds: float | None) -> str:
    """Format an ETA as mm:ss, or "--:--" when unknown."""
    if seconds is None:
        return "--:--"
    minutes, secs = divmod(int(round(seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"
