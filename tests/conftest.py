import asyncio

import pytest
import pytest_asyncio

from peer.endpoint import PeerEndpoint
from peer.loopback import LoopbackNetwork
from peer.signaling import LocalSignalingClient
from signaling.dispatch import RelayDispatcher
from signaling.models import Tier
from signaling.relay import SignalingRelay
from signaling.store import InMemoryRoomStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingConnection:
    """Relay connection that keeps every event pushed to it."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.events: list[tuple[str, dict]] = []

    async def send(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def named(self, event: str) -> list[dict]:
        return [data for name, data in self.events if name == event]


class EventLog:
    """Async callback collecting (event_type, data) pairs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []

    async def __call__(self, event_type: str, data=None) -> None:
        self.events.append((event_type, data))

    def named(self, event_type: str) -> list:
        return [data for name, data in self.events if name == event_type]


class Wire:
    """Carries signals between two negotiation machines and remembers them."""

    def __init__(self) -> None:
        self.machines: dict = {}
        self.signals: list[tuple[str, str]] = []

    def sender(self, name: str, to: str):
        async def send(event: str, payload) -> None:
            self.signals.append((name, event))
            self.machines[to].deliver(event, payload)
        return send

    def count(self, event: str) -> int:
        return sum(1 for _, e in self.signals if e == event)


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def relay(clock):
    return SignalingRelay(store=InMemoryRoomStore(shards=4), clock=clock)


@pytest.fixture
def dispatcher(relay):
    return RelayDispatcher(relay)


@pytest.fixture
def network():
    return LoopbackNetwork()


@pytest_asyncio.fixture
async def make_endpoint(dispatcher, network):
    """Build connected endpoints on the shared in-process relay."""
    endpoints = []

    async def _make(tier: Tier = Tier.PREMIUM, save_dir=None) -> PeerEndpoint:
        client = LocalSignalingClient(dispatcher)
        await client.connect()
        endpoint = PeerEndpoint(client, network.create_peer_connection, tier=tier, save_dir=save_dir)
        endpoints.append(endpoint)
        return endpoint

    yield _make

    for endpoint in endpoints:
        await endpoint.close()
