"""
Pytest fixtures for the party sync tests.

Provides a controllable clock, in-memory sinks that stand in for SSE
responses, and an aiohttp test client wired to create_app().
"""
import asyncio
from typing import Callable, List

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from main import create_app
from party.broadcaster import Broadcaster
from party.client import parse_sse_lines
from party.gateway import SyncGateway
from party.state import StateStore


class FakeClock:
    """Callable millisecond clock that only moves when told to"""

    def __init__(self, now: float = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return int(self.now)

    def advance(self, ms: float) -> None:
        self.now += ms


class RecordingSink:
    """Accepts every write and keeps it"""

    def __init__(self):
        self.writes: List[bytes] = []

    async def write(self, data: bytes) -> None:
        self.writes.append(data)

    def events(self):
        text = b"".join(self.writes).decode("utf-8")
        return list(parse_sse_lines(text.split("\n")))

    @property
    def keepalives(self) -> int:
        return sum(1 for w in self.writes if w.startswith(b":"))


class FailingSink:
    """Every write fails as if the guest hung up"""

    def __init__(self):
        self.attempts = 0

    async def write(self, data: bytes) -> None:
        self.attempts += 1
        raise ConnectionResetError("Cannot write to closing transport")


class FlakySink(RecordingSink):
    """Accepts the first `ok_writes` writes, then fails"""

    def __init__(self, ok_writes: int = 1):
        super().__init__()
        self.ok_writes = ok_writes

    async def write(self, data: bytes) -> None:
        if len(self.writes) >= self.ok_writes:
            raise ConnectionResetError("peer went away")
        await super().write(data)


class HangingSink:
    """A guest whose socket never drains"""

    async def write(self, data: bytes) -> None:
        await asyncio.Event().wait()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> StateStore:
    return StateStore(clock=clock)


@pytest.fixture
def broadcaster(store: StateStore) -> Broadcaster:
    return Broadcaster(store.snapshot, keepalive_interval=60.0, write_timeout=0.2)


@pytest.fixture
def gateway(store: StateStore, broadcaster: Broadcaster) -> SyncGateway:
    return SyncGateway(store, broadcaster)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def new_sink() -> Callable[[], RecordingSink]:
    return RecordingSink


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()


@pytest.fixture
def flaky_sink() -> FlakySink:
    return FlakySink(ok_writes=1)


@pytest.fixture
def hanging_sink() -> HangingSink:
    return HangingSink()


@pytest.fixture
def eventually() -> Callable:
    """Poll a predicate until it holds or the timeout passes"""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _eventually


@pytest.fixture
def app(store: StateStore):
    return create_app(
        store=store,
        party_name="Test Party",
        keepalive_interval=60.0,
        write_timeout=1.0,
        rate_limit=0,
    )


@pytest_asyncio.fixture
async def client(app):
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest_asyncio.fixture
async def server(app):
    async with TestServer(app) as server:
        yield server
