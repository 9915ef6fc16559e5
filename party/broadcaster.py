"""
Fan-out of party snapshots to long-lived Server-Sent Events channels

Each guest holds one SubscriberChannel. Publishing writes the same event to
every channel concurrently; a channel whose write fails or times out is
dropped on the spot and never retried.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Optional, Set

from .errors import ChannelWriteFailure
from .state import Snapshot
from .utils import generate_channel_id

logger = logging.getLogger("headphone_party")

STATE_EVENT = "state"
HOST_EVENT = "host"
KEEPALIVE = b": keep-alive\n\n"

DEFAULT_KEEPALIVE_INTERVAL = 15.0
DEFAULT_WRITE_TIMEOUT = 5.0


def format_event(event: str, data: Any) -> bytes:
    """Format a single SSE event."""
    return f"event: {event}\ndata: {json.dumps(data)}\n\n".encode("utf-8")


def host_event_data(snapshot: Snapshot) -> dict:
    return {
        "connected": snapshot.host_connected,
        "messageId": snapshot.version,
        "serverTime": snapshot.server_time_ms,
    }


class SubscriberChannel:
    """
    One open event stream to a guest.

    The sink is anything with an awaitable write(bytes), normally an
    aiohttp StreamResponse that has already been prepared.
    """

    def __init__(self, sink: Any, channel_id: Optional[str] = None):
        self.id = channel_id or generate_channel_id()
        self._sink = sink
        self._write_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self.keepalive_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<SubscriberChannel {self.id}{' closed' if self.closed else ''}>"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def send(self, payload: bytes, timeout: Optional[float] = None) -> None:
        """Write one framed event; raises ChannelWriteFailure on any error"""
        if self.closed:
            raise ChannelWriteFailure(f"{self.id} is closed")
        try:
            async with self._write_lock:
                await asyncio.wait_for(self._sink.write(payload), timeout)
        except asyncio.TimeoutError as e:
            raise ChannelWriteFailure(f"{self.id}: write timed out") from e
        except Exception as e:
            raise ChannelWriteFailure(f"{self.id}: {e}") from e

    def close(self) -> None:
        task = self.keepalive_task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()


class Broadcaster:
    """Owns the set of live SubscriberChannels"""

    def __init__(
        self,
        snapshot_source: Callable[[], Snapshot],
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        write_timeout: Optional[float] = DEFAULT_WRITE_TIMEOUT,
    ):
        self._snapshot_source = snapshot_source
        self._keepalive_interval = keepalive_interval
        self._write_timeout = write_timeout
        self._channels: Set[SubscriberChannel] = set()

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, channel: SubscriberChannel) -> bool:
        return channel in self._channels

    async def subscribe(self, sink: Any) -> SubscriberChannel:
        """
        Register a channel and send it the current state as its first event.

        The snapshot is taken and the channel registered without yielding to
        the event loop, so no publish can slip in between the two.
        """
        channel = SubscriberChannel(sink)
        snapshot = self._snapshot_source()
        self._channels.add(channel)
        channel.keepalive_task = asyncio.create_task(self._keep_alive(channel))
        logger.info(f"📡 Guest {channel.id} connected (total: {len(self._channels)})")

        await self._deliver(channel, format_event(STATE_EVENT, snapshot.to_wire()))
        return channel

    def unsubscribe(self, channel: SubscriberChannel) -> None:
        """Remove a channel; safe to call more than once"""
        if channel in self._channels:
            self._channels.discard(channel)
            logger.info(f"📡 Guest {channel.id} disconnected (remaining: {len(self._channels)})")
        channel.close()

    async def publish(self, snapshot: Snapshot, event: str = STATE_EVENT) -> int:
        """
        Send a snapshot to every live channel.

        Returns the number of channels that accepted the write. Channels
        that fail are removed; nothing is raised to the caller.
        """
        data = host_event_data(snapshot) if event == HOST_EVENT else snapshot.to_wire()
        payload = format_event(event, data)

        channels = list(self._channels)
        if not channels:
            return 0

        results = await asyncio.gather(*(self._deliver(ch, payload) for ch in channels))
        delivered = sum(1 for ok in results if ok)
        logger.debug(f"Published {event} v{snapshot.version} to {delivered}/{len(channels)} guests")
        return delivered

    async def close(self) -> None:
        """Drop every channel (server shutdown)"""
        channels = list(self._channels)
        tasks = [ch.keepalive_task for ch in channels if ch.keepalive_task is not None]
        for channel in channels:
            self.unsubscribe(channel)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if channels:
            logger.info(f"🛑 Closed {len(channels)} guest stream(s)")

    async def _deliver(self, channel: SubscriberChannel, payload: bytes) -> bool:
        try:
            await channel.send(payload, timeout=self._write_timeout)
        except ChannelWriteFailure as e:
            logger.debug(f"Failed to send to guest: {e}")
            self.unsubscribe(channel)
            return False
        return True

    async def _keep_alive(self, channel: SubscriberChannel) -> None:
        while channel in self._channels:
            await asyncio.sleep(self._keepalive_interval)
            if channel not in self._channels:
                return
            await self._deliver(channel, KEEPALIVE)
