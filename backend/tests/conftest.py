"""
Shared pytest fixtures for LAN Chat tests.

Provides:
- in-memory stand-ins for the relay, peer client, beacon and listener
- a factory for Session Coordinators wired to those stand-ins
- free local port helper for loopback tests
"""

import asyncio
import socket
import sys
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from discovery.models import PeerRecord
from errors import ConnectionFailed, DeliveryError, DiscoveryError, RelayError
from relay.registry import PeerRegistry
from session.coordinator import SessionCoordinator


def free_udp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ============================================================================
# Transport stand-ins
# ============================================================================

class FakeRelay:
    def __init__(self, fakes: "Fakes"):
        self.fakes = fakes
        self.registry = PeerRegistry()
        self.port = 8080
        self.submitted = []
        self._callbacks = []

    def on_event(self, callback):
        self._callbacks.append(callback)

    async def emit(self, event_type, data):
        for cb in self._callbacks:
            await cb(event_type, data)

    async def start(self):
        self.fakes.log.append("relay.start")
        if self.fakes.relay_fails:
            raise RelayError("port 8080 in use")

    async def stop(self):
        self.fakes.log.append("relay.stop")

    def submit(self, envelope):
        self.submitted.append(envelope)


class FakeBeacon:
    def __init__(self, fakes: "Fakes"):
        self.fakes = fakes
        self.record_factory = None

    async def start(self, record):
        self.fakes.log.append("beacon.start")
        if self.fakes.beacon_fails:
            raise DiscoveryError("no network")
        self.record_factory = record
        if self.fakes.early_peer is not None:
            # a peer joins the running relay before hosting is fully up
            relay = self.fakes.relays[-1]
            await relay.registry.add(self.fakes.early_peer)
            await relay.emit("peer_connected", self.fakes.early_peer)

    async def stop(self):
        self.fakes.log.append("beacon.stop")


class FakeClient:
    def __init__(self, fakes: "Fakes"):
        self.fakes = fakes
        self.sent = []
        self.target = None
        self._callbacks = []

    def on_event(self, callback):
        self._callbacks.append(callback)

    async def emit(self, event_type, data):
        for cb in self._callbacks:
            await cb(event_type, data)

    async def connect(self, address, port, self_record):
        self.fakes.log.append(f"client.connect:{address}:{port}")
        if self.fakes.connect_fails:
            raise ConnectionFailed("connection refused")
        self.target = (address, port)
        self.self_record = self_record

    async def send(self, envelope):
        self.sent.append(envelope)
        if self.fakes.send_fails:
            raise DeliveryError("HTTP 503")

    async def disconnect(self, self_record=None):
        self.fakes.log.append("client.disconnect")


class FakeListener:
    def __init__(self, fakes: "Fakes"):
        self.fakes = fakes
        self.cancelled = asyncio.Event()

    async def discover(self, self_identity, timeout=10):
        self.fakes.log.append(f"listener.discover:{self_identity}")
        if self.fakes.discover_blocks:
            await self.cancelled.wait()
        return list(self.fakes.discovered)

    def cancel(self):
        self.cancelled.set()


class Fakes:
    def __init__(self):
        self.log: list[str] = []
        self.relays: list[FakeRelay] = []
        self.beacons: list[FakeBeacon] = []
        self.clients: list[FakeClient] = []
        self.listeners: list[FakeListener] = []
        self.discovered: list[PeerRecord] = []
        self.relay_fails = False
        self.beacon_fails = False
        self.connect_fails = False
        self.send_fails = False
        self.discover_blocks = False
        self.early_peer: PeerRecord | None = None

    def make_relay(self):
        relay = FakeRelay(self)
        self.relays.append(relay)
        return relay

    def make_beacon(self):
        beacon = FakeBeacon(self)
        self.beacons.append(beacon)
        return beacon

    def make_client(self):
        client = FakeClient(self)
        self.clients.append(client)
        return client

    def make_listener(self):
        listener = FakeListener(self)
        self.listeners.append(listener)
        return listener

    def coordinator(self, identity: str = "alice") -> SessionCoordinator:
        return SessionCoordinator(
            identity=identity,
            relay_factory=self.make_relay,
            client_factory=self.make_client,
            beacon_factory=self.make_beacon,
            listener_factory=self.make_listener,
            local_ip=lambda: "192.168.1.10",
        )


@pytest.fixture
def fakes() -> Fakes:
    return Fakes()


@pytest.fixture
def alice_host() -> PeerRecord:
    return PeerRecord(identity="alice", address="192.168.1.10", port=8080)
