"""
Tap tempo: BPM from the mean interval between the last N taps
"""
import math
from collections import deque
from typing import Callable, Deque, Optional

from .utils import monotonic_ms

HOST_MAX_TAPS = 12
GUEST_MAX_TAPS = 10


class TapTempo:

    def __init__(self, max_taps: int = HOST_MAX_TAPS, clock: Callable[[], float] = monotonic_ms):
        if max_taps < 2:
            raise ValueError("max_taps must be at least 2")
        self._clock = clock
        self._taps: Deque[float] = deque(maxlen=max_taps)
        self._bpm: Optional[float] = None

    def __len__(self) -> int:
        return len(self._taps)

    @property
    def max_taps(self) -> int:
        return self._taps.maxlen

    @property
    def bpm(self) -> Optional[float]:
        """Displayed estimate, None until two taps are in"""
        return self._bpm

    def tap(self, ts: Optional[float] = None) -> Optional[float]:
        """
        Record a tap (ms timestamp, default: now) and return the estimate.

        A tap that is not later than the previous one is a double fire and
        is ignored, leaving the displayed estimate as it was.
        """
        if ts is None:
            ts = self._clock()

        if self._taps and ts <= self._taps[-1]:
            return self._bpm

        self._taps.append(ts)
        if len(self._taps) < 2:
            self._bpm = None
            return None

        # mean of consecutive intervals collapses to (last - first) / count
        mean_interval = (self._taps[-1] - self._taps[0]) / (len(self._taps) - 1)
        bpm = 60000.0 / mean_interval if mean_interval > 0 else math.inf
        if math.isfinite(bpm):
            self._bpm = bpm
        return self._bpm

    def clear(self) -> None:
        self._taps.clear()
        self._bpm = None
