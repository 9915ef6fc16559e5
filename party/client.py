"""
Python client for a Headphone Party server

PartyClient wraps the HTTP API. GuestSession follows the event stream and
keeps the guest's clock offset, tap tempo and playback delay up to date.
HostHeartbeat keeps the server's host-connected flag alive while a host is
running.
"""
import asyncio
import contextlib
import json
import logging
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Iterable, Iterator, List, Optional, Tuple

import aiohttp

from .clock import MAX_DELAY_MS, BeatAligner, ClockSync, clamp_delay
from .commands import HOST_STATUS, SYNC_CLEAR, SYNC_UPDATE
from .errors import InvalidRequest, PartyAPIError, PartyError
from .state import Snapshot, is_number
from .tap import GUEST_MAX_TAPS, HOST_MAX_TAPS, TapTempo
from .utils import now_ms

logger = logging.getLogger("headphone_party.client")

ServerEvent = Tuple[str, str]

# ============================================================
# SSE PARSING
# ============================================================

class SSEParser:
    """Line-at-a-time Server-Sent Events parser"""

    def __init__(self) -> None:
        self._event = "message"
        self._data: List[str] = []

    def feed_line(self, line: str) -> Optional[ServerEvent]:
        """Feed one line (without its newline); returns an event when one completes"""
        if line == "":
            if not self._data:
                self._event = "message"
                return None
            event = (self._event, "\n".join(self._data))
            self._event = "message"
            self._data = []
            return event

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value or "message"
        elif field == "data":
            self._data.append(value)
        return None


def parse_sse_lines(lines: Iterable[str]) -> Iterator[ServerEvent]:
    parser = SSEParser()
    for line in lines:
        event = parser.feed_line(line.rstrip("\r\n"))
        if event is not None:
            yield event

# ============================================================
# HTTP CLIENT
# ============================================================

class PartyClient:
    """
    Async client for the party HTTP API.

    Example:
        >>> async with PartyClient("http://192.168.1.20:4173") as client:
        ...     snapshot = await client.update_tempo(124.0)
        ...     async for event, data in client.events():
        ...         print(event, data)
    """

    def __init__(
        self,
        base_url: str = "http://localhost:4173",
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        stream_read_timeout: float = 45.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        # no total limit on the stream, but a silent socket (no keep-alive) is dead
        self.stream_timeout = aiohttp.ClientTimeout(total=None, sock_read=stream_read_timeout)

        if session is not None:
            self._session = session
            self._owns_session = False
        else:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

    async def __aenter__(self) -> "PartyClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session:
            await self._session.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        async with self._session.request(
            method, self._url(path), json=payload, timeout=self.timeout
        ) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None
            if resp.status >= 400:
                message = data.get("error") if isinstance(data, dict) else None
                raise PartyAPIError(resp.status, message or resp.reason or "request failed")
            return data

    async def fetch_state(self) -> Snapshot:
        return Snapshot.from_wire(await self._request("GET", "/api/state"))

    async def fetch_info(self) -> dict:
        return await self._request("GET", "/api/info")

    async def send_sync(self, message: dict) -> Snapshot:
        data = await self._request("POST", "/api/sync", message)
        return Snapshot.from_wire(data.get("state") if isinstance(data, dict) else None)

    async def update_tempo(self, bpm: float) -> Snapshot:
        return await self.send_sync({"type": SYNC_UPDATE, "bpm": bpm})

    async def clear_tempo(self) -> Snapshot:
        return await self.send_sync({"type": SYNC_CLEAR})

    async def set_host_status(self, connected: bool) -> Snapshot:
        return await self.send_sync({"type": HOST_STATUS, "connected": connected})

    async def events(self) -> AsyncIterator[ServerEvent]:
        """Yield (event, data) pairs from /api/events until the stream closes"""
        async with self._session.get(
            self._url("/api/events"),
            headers={"Accept": "text/event-stream"},
            timeout=self.stream_timeout,
        ) as resp:
            if resp.status != 200:
                raise PartyAPIError(resp.status, resp.reason or "event stream refused")
            parser = SSEParser()
            async for raw in resp.content:
                event = parser.feed_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
                if event is not None:
                    yield event

# ============================================================
# GUEST
# ============================================================

class GuestSession:
    """
    A guest's view of the party.

    Holds the last snapshot, the clock offset estimated from it and the
    playback delay the guest has chosen. State is discarded on every
    reconnect and rebuilt from the fresh snapshot the server sends first.
    """

    def __init__(
        self,
        client: PartyClient,
        clock: Callable[[], float] = now_ms,
        max_delay_ms: float = MAX_DELAY_MS,
        max_taps: int = GUEST_MAX_TAPS,
    ):
        self.client = client
        self.clock_sync = ClockSync(clock)
        self.aligner = BeatAligner(self.clock_sync)
        self.taps = TapTempo(max_taps)
        self.max_delay_ms = max_delay_ms
        self.snapshot: Optional[Snapshot] = None
        self.delay_ms = 0.0
        self.connected = False
        self.connections = 0
        self.resyncs = 0

    @property
    def offset_ms(self) -> Optional[float]:
        return self.clock_sync.offset_ms

    @property
    def received_at_ms(self) -> Optional[float]:
        return self.clock_sync.received_at_ms

    def reset(self) -> None:
        self.snapshot = None
        self.clock_sync.reset()

    def apply_snapshot(self, snapshot: Snapshot) -> bool:
        """Adopt a snapshot unless it is older than the one we have"""
        if self.snapshot is not None and snapshot.version < self.snapshot.version:
            logger.debug(f"Ignoring stale snapshot v{snapshot.version} (have v{self.snapshot.version})")
            return False
        self.snapshot = snapshot
        self.clock_sync.update(snapshot)
        return True

    def apply_host(self, payload: Any) -> bool:
        if not isinstance(payload, dict) or not isinstance(payload.get("connected"), bool):
            raise InvalidRequest("host payload must carry a boolean 'connected'")
        if self.snapshot is None:
            return False

        version = payload.get("messageId")
        if is_number(version):
            if version < self.snapshot.version:
                return False
            self.snapshot = replace(self.snapshot, host_connected=payload["connected"], version=int(version))
        else:
            self.snapshot = replace(self.snapshot, host_connected=payload["connected"])
        return True

    async def handle_event(self, event: str, data: str) -> None:
        try:
            payload = json.loads(data)
            if event == "state":
                self.apply_snapshot(Snapshot.from_wire(payload))
            elif event == "host":
                self.apply_host(payload)
            else:
                logger.debug(f"Ignoring unknown event {event!r}")
        except (ValueError, InvalidRequest) as e:
            logger.warning(f"Failed to parse {event} event, refetching state: {e}")
            await self.refresh()

    async def refresh(self) -> Snapshot:
        snapshot = await self.client.fetch_state()
        self.resyncs += 1
        self.apply_snapshot(snapshot)
        return snapshot

    def recommended_delay(self) -> Optional[float]:
        return self.aligner.recommend(self.snapshot)

    def align(self) -> Optional[float]:
        """Apply the recommended delay, clamped; None when there is no estimate"""
        recommended = self.recommended_delay()
        if recommended is None:
            return None
        return self.set_delay(recommended)

    def set_delay(self, value: float) -> float:
        self.delay_ms = clamp_delay(value, self.max_delay_ms)
        return self.delay_ms

    def nudge(self, amount_ms: float) -> float:
        return self.set_delay(self.delay_ms + amount_ms)

    def tap(self, ts: Optional[float] = None) -> Optional[float]:
        return self.taps.tap(ts)

    async def run(self, initial_backoff: float = 0.5, max_backoff: float = 10.0) -> None:
        """Follow the event stream forever, reconnecting with capped backoff"""
        backoff = initial_backoff
        while True:
            self.reset()
            try:
                async for event, data in self.client.events():
                    if not self.connected:
                        self.connected = True
                        self.connections += 1
                        backoff = initial_backoff
                        logger.info(f"🎧 Connected to {self.client.base_url}")
                    await self.handle_event(event, data)
                logger.info("Event stream closed by server")
            except (aiohttp.ClientError, asyncio.TimeoutError, PartyError, ValueError) as e:
                logger.warning(f"Event stream failed: {e}")
            finally:
                self.connected = False

            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, max_backoff)

# ============================================================
# HOST
# ============================================================

class HostHeartbeat:
    """Reports host liveness and broadcasts the host's tapped tempo"""

    def __init__(self, client: PartyClient, interval: float = 10.0, max_taps: int = HOST_MAX_TAPS):
        self.client = client
        self.interval = interval
        self.taps = TapTempo(max_taps)
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "HostHeartbeat":
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        await self._report(True)
        self._task = asyncio.create_task(self._beat())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._report(False)

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self._report(True)

    async def _report(self, connected: bool) -> None:
        try:
            await self.client.set_host_status(connected)
        except (aiohttp.ClientError, asyncio.TimeoutError, PartyAPIError) as e:
            logger.warning(f"Failed to update host status: {e}")

    def tap(self, ts: Optional[float] = None) -> Optional[float]:
        return self.taps.tap(ts)

    async def broadcast(self) -> Optional[Snapshot]:
        """Send the local tap estimate as the party tempo"""
        if self.taps.bpm is None:
            return None
        return await self.client.update_tempo(self.taps.bpm)

    async def clear(self) -> Snapshot:
        self.taps.clear()
        return await self.client.clear_tempo()
