"""
SyncGateway: the only way in to the party state

Mutations are serialized behind one asyncio.Lock so version bumps and their
broadcasts happen in the same order. Reads and subscriptions skip the lock.
"""
import asyncio
import logging
from typing import Any

from .broadcaster import HOST_EVENT, STATE_EVENT, Broadcaster, SubscriberChannel
from .commands import ClearTempo, UpdateTempo, parse_command
from .state import Snapshot, StateStore

logger = logging.getLogger("headphone_party")


class SyncGateway:

    def __init__(self, store: StateStore, broadcaster: Broadcaster):
        self.store = store
        self.broadcaster = broadcaster
        self._mutation_lock = asyncio.Lock()

    async def mutate(self, message: Any) -> Snapshot:
        """
        Apply a tagged sync message and broadcast the result.

        Invalid messages raise before the store is touched, so they never
        change state or reach subscribers.
        """
        command = parse_command(message)

        async with self._mutation_lock:
            if isinstance(command, UpdateTempo):
                snapshot = self.store.set_tempo(command.bpm)
                logger.info(f"🥁 Tempo set to {snapshot.tempo_bpm:.2f} BPM (v{snapshot.version})")
                await self.broadcaster.publish(snapshot, STATE_EVENT)
                return snapshot

            if isinstance(command, ClearTempo):
                snapshot = self.store.clear()
                logger.info(f"🧹 Tempo cleared (v{snapshot.version})")
                await self.broadcaster.publish(snapshot, STATE_EVENT)
                return snapshot

            changed = self.store.set_host_connected(command.connected)
            if changed is None:
                return self.store.snapshot()
            logger.info(f"🎧 Host {'connected' if changed.host_connected else 'offline'} (v{changed.version})")
            await self.broadcaster.publish(changed, HOST_EVENT)
            return changed

    async def subscribe(self, sink: Any) -> SubscriberChannel:
        return await self.broadcaster.subscribe(sink)

    def unsubscribe(self, channel: SubscriberChannel) -> None:
        self.broadcaster.unsubscribe(channel)

    def read_snapshot(self) -> Snapshot:
        return self.store.snapshot()

    async def close(self) -> None:
        await self.broadcaster.close()
