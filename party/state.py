"""
In-memory party state: the single authoritative tempo/host record

One StateStore lives for the lifetime of the server process. Every accepted
mutation bumps the version by exactly one and hands back an immutable
Snapshot that can be broadcast as-is.
"""
import math
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

from .errors import InvalidRequest, InvalidValue
from .utils import now_ms


def is_number(value: Any) -> bool:
    """True for int/float values, excluding bool"""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_finite_number(value: Any) -> bool:
    """is_number() and finite; ints too large for a float count as infinite"""
    if not is_number(value):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def validate_bpm(bpm: Any) -> float:
    """Return bpm as float, or raise InvalidValue if not finite and > 0"""
    if not is_finite_number(bpm) or bpm <= 0:
        raise InvalidValue("Invalid BPM value")
    return float(bpm)


@dataclass
class PartyState:
    tempo_bpm: Optional[float] = None
    beat_origin_ms: Optional[int] = None
    version: int = 0
    host_connected: bool = False


@dataclass(frozen=True)
class Snapshot:
    """Immutable copy of PartyState plus the server time it was taken at"""

    tempo_bpm: Optional[float]
    beat_origin_ms: Optional[int]
    version: int
    host_connected: bool
    server_time_ms: int

    @property
    def has_tempo(self) -> bool:
        return self.tempo_bpm is not None and self.beat_origin_ms is not None

    def to_wire(self) -> Dict[str, Any]:
        """JSON shape sent to guests"""
        return {
            "bpm": self.tempo_bpm,
            "beatTimestamp": self.beat_origin_ms,
            "messageId": self.version,
            "hostConnected": self.host_connected,
            "serverTime": self.server_time_ms,
        }

    @classmethod
    def from_wire(cls, data: Any) -> "Snapshot":
        """Parse the JSON shape produced by to_wire()"""
        if not isinstance(data, dict):
            raise InvalidRequest("state payload must be an object")

        bpm = data.get("bpm")
        origin = data.get("beatTimestamp")
        version = data.get("messageId")
        server_time = data.get("serverTime")
        host_connected = data.get("hostConnected", False)

        if bpm is not None and not is_finite_number(bpm):
            raise InvalidRequest("bpm must be a number or null")
        if origin is not None and not is_finite_number(origin):
            raise InvalidRequest("beatTimestamp must be a number or null")
        if (bpm is None) != (origin is None):
            raise InvalidRequest("bpm and beatTimestamp must be set together")
        if not is_finite_number(version) or version < 0:
            raise InvalidRequest("messageId must be a non-negative integer")
        if not is_finite_number(server_time):
            raise InvalidRequest("serverTime must be a number")
        if not isinstance(host_connected, bool):
            raise InvalidRequest("hostConnected must be a boolean")

        return cls(
            tempo_bpm=None if bpm is None else float(bpm),
            beat_origin_ms=None if origin is None else int(origin),
            version=int(version),
            host_connected=host_connected,
            server_time_ms=int(server_time),
        )


class StateStore:
    """
    Owns the PartyState and the rules for mutating it.

    All reads and writes go through a lock so a reader never sees tempo
    without origin (or the reverse), even from another thread.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._state = PartyState()
        self._lock = threading.Lock()

    def _snapshot_locked(self) -> Snapshot:
        return Snapshot(
            tempo_bpm=self._state.tempo_bpm,
            beat_origin_ms=self._state.beat_origin_ms,
            version=self._state.version,
            host_connected=self._state.host_connected,
            server_time_ms=self._clock(),
        )

    def snapshot(self) -> Snapshot:
        with self._lock:
            return self._snapshot_locked()

    @property
    def version(self) -> int:
        with self._lock:
            return self._state.version

    def set_tempo(self, bpm: float) -> Snapshot:
        """Set the shared tempo; the beat origin becomes 'now' on the server clock"""
        bpm = validate_bpm(bpm)
        with self._lock:
            self._state = replace(
                self._state,
                tempo_bpm=bpm,
                beat_origin_ms=self._clock(),
                version=self._state.version + 1,
            )
            return self._snapshot_locked()

    def clear(self) -> Snapshot:
        with self._lock:
            self._state = replace(
                self._state,
                tempo_bpm=None,
                beat_origin_ms=None,
                version=self._state.version + 1,
            )
            return self._snapshot_locked()

    def set_host_connected(self, connected: bool) -> Optional[Snapshot]:
        """Edge-triggered: returns a Snapshot only when the flag changes"""
        connected = bool(connected)
        with self._lock:
            if self._state.host_connected == connected:
                return None
            self._state = replace(
                self._state,
                host_connected=connected,
                version=self._state.version + 1,
            )
            return self._snapshot_locked()
