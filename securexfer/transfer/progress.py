"""Progress arithmetic shared by the sending and receiving side."""

import math
import time


def progress_percent(done: int, total: int | None) -> int | None:
    """Integer percentage rounded half up, or None when the total is unknown or zero."""
    if not total or total <= 0:
        return None
    return min(100, math.floor(done * 100 / total + 0.5))


class SpeedTracker:
    """Rolling average speed calculator."""

    def __init__(self, window: float = 2.0):
        self._window = window
        self._samples: list[tuple[float, int]] = []

    def record(self, byte_count: int) -> None:
        now = time.monotonic()
        self._samples.append((now, byte_count))
        cutoff = now - self._window
        self._samples = [(t, b) for t, b in self._samples if t >= cutoff]

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        if len(self._samples) < 2:
            return 0.0
        total_bytes = sum(b for _, b in self._samples[1:])
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        return total_bytes / elapsed

    def eta(self, remaining_bytes: int) -> float:
        speed = self.get_speed()
        return remaining_bytes / speed if speed > 0 else 0.0
