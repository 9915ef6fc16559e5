"""
Tagged mutation commands accepted on POST /api/sync

    {"type": "sync-update", "bpm": 128.0}
    {"type": "sync-clear"}
    {"type": "host-status", "connected": true}
"""
from dataclasses import dataclass
from typing import Any, Union

from .errors import InvalidRequest
from .state import is_number, validate_bpm

SYNC_UPDATE = "sync-update"
SYNC_CLEAR = "sync-clear"
HOST_STATUS = "host-status"


@dataclass(frozen=True)
class UpdateTempo:
    bpm: float


@dataclass(frozen=True)
class ClearTempo:
    pass


@dataclass(frozen=True)
class HostStatus:
    connected: bool


Command = Union[UpdateTempo, ClearTempo, HostStatus]


def parse_command(message: Any) -> Command:
    """
    Turn a decoded JSON body into a Command.

    Raises:
        InvalidRequest: body is not an object, has no/unknown type, or bpm
            is missing or not a number
        InvalidValue: bpm is a number but not finite and > 0
    """
    if not isinstance(message, dict):
        raise InvalidRequest("Sync message must be a JSON object")

    kind = message.get("type")

    if kind == SYNC_UPDATE:
        bpm = message.get("bpm")
        if not is_number(bpm):
            raise InvalidRequest("Invalid BPM value")
        return UpdateTempo(bpm=validate_bpm(bpm))

    if kind == SYNC_CLEAR:
        return ClearTempo()

    if kind == HOST_STATUS:
        return HostStatus(connected=bool(message.get("connected", False)))

    raise InvalidRequest("Unknown sync message type")

