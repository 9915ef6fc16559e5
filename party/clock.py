"""
Client-side clock offset estimation and beat alignment

The server stamps every snapshot with its wall clock. A guest takes
(serverTime - localNow) at receipt as its clock offset; one-way network
latency is folded into that estimate and corrected again on the next
snapshot. With the offset, tempo and beat origin, the guest can work out how
far it is into the current beat and how much extra output delay would put
its next beat back on the host's grid.
"""
import math
from typing import Callable, Optional

from .errors import ClockOffsetUnavailable
from .state import Snapshot
from .utils import now_ms

MAX_DELAY_MS = 2000


class ClockSync:
    """Tracks offset_ms = server clock - local clock"""

    def __init__(self, clock: Callable[[], float] = now_ms):
        self._clock = clock
        self._offset_ms: Optional[float] = None
        self.received_at_ms: Optional[float] = None

    @property
    def offset_ms(self) -> Optional[float]:
        """Current offset, or None before the first snapshot"""
        return self._offset_ms

    @property
    def has_offset(self) -> bool:
        return self._offset_ms is not None

    def update(self, snapshot: Snapshot) -> float:
        local_now = self._clock()
        self._offset_ms = snapshot.server_time_ms - local_now
        self.received_at_ms = local_now
        return self._offset_ms

    def reset(self) -> None:
        self._offset_ms = None
        self.received_at_ms = None

    def local_now_ms(self) -> float:
        return self._clock()

    def require_offset(self) -> float:
        """Offset for callers that cannot proceed without one"""
        if self._offset_ms is None:
            raise ClockOffsetUnavailable("no snapshot received yet")
        return self._offset_ms

    def to_server_time(self, local_ms: Optional[float] = None) -> Optional[float]:
        """Translate a local timestamp (default: now) onto the server clock; None without an offset"""
        if self._offset_ms is None:
            return None
        if local_ms is None:
            local_ms = self._clock()
        return local_ms + self._offset_ms

    def to_local_time(self, server_ms: float) -> Optional[float]:
        """Translate a server timestamp into a local deadline; None without an offset"""
        if self._offset_ms is None:
            return None
        return server_ms - self._offset_ms


def beat_duration_ms(bpm: float) -> float:
    return 60000.0 / bpm


def recommended_delay_ms(bpm: float, beat_origin_ms: float, offset_ms: float, local_now_ms: float) -> float:
    """
    Extra output delay that lands the next beat on the host's grid.

    The phase is normalized into [0, beat) even when "now" is before the
    beat origin, so the result is always in (0, beat].
    """
    beat = beat_duration_ms(bpm)
    now_on_server = local_now_ms + offset_ms
    elapsed = (now_on_server - beat_origin_ms) % beat
    return beat - elapsed


def clamp_delay(value: float, max_delay_ms: float = MAX_DELAY_MS) -> float:
    """Clamp into the playback engine's supported delay range"""
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(float(max_delay_ms), value))


class BeatAligner:
    """Phase-correct delay recommendations from the latest snapshot"""

    def __init__(self, clock_sync: ClockSync):
        self.clock_sync = clock_sync

    def recommend(self, snapshot: Optional[Snapshot]) -> Optional[float]:
        """
        Recommended delay in ms, or None when there is no estimate
        (no snapshot, no tempo set, or no clock offset yet).
        """
        if snapshot is None or not snapshot.has_tempo:
            return None
        offset = self.clock_sync.offset_ms
        if offset is None:
            return None
        return recommended_delay_ms(
            snapshot.tempo_bpm, snapshot.beat_origin_ms, offset, self.clock_sync.local_now_ms()
        )
