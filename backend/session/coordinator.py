"""
Session Coordinator: owns local identity and the single active role.

Starts either a Relay Server plus Discovery Beacon (hosting) or a Peer Client
(joining), turns transport events into updates of the three observable
streams (connection state, message history, discovered peers), and emits
every change to registered listeners.
"""

import asyncio
import logging
from typing import Callable

from config import DEVICE_NAME, DISCOVERY_TIMEOUT
from discovery.models import PeerRecord
from discovery.service import DiscoveryBeacon, DiscoveryListener, get_local_ip
from errors import LanChatError, StateError
from relay.client import PeerClient
from relay.models import MessageEnvelope, MessageKind
from relay.server import RelayServer
from session.models import ConnectionRole, ConnectionState

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """Single owner of the session state.

    Role transitions are serialized by ``_op_lock``; every write to the
    streams goes through ``_lock`` and never awaits network I/O while
    holding it, so transport callbacks can always get in.
    """

    def __init__(
        self,
        identity: str = DEVICE_NAME,
        relay_factory: Callable[[], RelayServer] = RelayServer,
        client_factory: Callable[[], PeerClient] = PeerClient,
        beacon_factory: Callable[[], DiscoveryBeacon] = DiscoveryBeacon,
        listener_factory: Callable[[], DiscoveryListener] = DiscoveryListener,
        local_ip: Callable[[], str] = get_local_ip,
    ) -> None:
        self._state = ConnectionState(local_identity=identity)
        self._messages: tuple[MessageEnvelope, ...] = ()
        self._message_ids: set = set()
        self._peers: tuple[PeerRecord, ...] = ()

        self._lock = asyncio.Lock()
        self._op_lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()
        self._event_callbacks: list = []  # async fn(event_type, data)

        self._relay_factory = relay_factory
        self._client_factory = client_factory
        self._beacon_factory = beacon_factory
        self._listener_factory = listener_factory
        self._local_ip = local_ip

        self._relay: RelayServer | None = None
        self._beacon: DiscoveryBeacon | None = None
        self._client: PeerClient | None = None
        self._listener: DiscoveryListener | None = None

    # --- Observable streams ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def messages(self) -> tuple[MessageEnvelope, ...]:
        return self._messages

    @property
    def peers(self) -> tuple[PeerRecord, ...]:
        return self._peers

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def _update(self, **changes) -> ConnectionState:
        async with self._lock:
            self._state = self._state.model_copy(update=changes)
            state = self._state
        await self._emit("state", state)
        return state

    async def _append(self, envelope: MessageEnvelope) -> bool:
        async with self._lock:
            if envelope.id in self._message_ids:
                return False
            self._message_ids.add(envelope.id)
            self._messages = (*self._messages, envelope)
        await self._emit("message", envelope)
        return True

    # --- Operations ---

    async def set_identity(self, name: str) -> None:
        if not name or not name.strip():
            raise ValueError("Identity must not be empty")
        async with self._op_lock:
            if self._state.role != ConnectionRole.IDLE:
                raise StateError("Identity can only be changed while idle")
            if name == self._state.local_identity:
                return
            await self._update(local_identity=name)
            logger.info(f"Local identity set to {name}")

    async def start_hosting(self) -> None:
        """Start the relay, then advertise it. Rolls back to idle on failure."""
        async with self._op_lock:
            if self._state.role == ConnectionRole.HOSTING:
                return
            if self._state.role == ConnectionRole.CONNECTED:
                await self._stop_client()

            relay = self._relay_factory()
            relay.on_event(self._on_relay_event)
            beacon = self._beacon_factory()
            try:
                await relay.start()
                self._relay = relay
                await beacon.start(lambda: self._host_record(relay.port))
                self._beacon = beacon
            except LanChatError as e:
                logger.error(f"Hosting failed: {e}")
                await beacon.stop()
                await relay.stop()
                self._beacon = None
                self._relay = None
                await self._update(role=ConnectionRole.IDLE, peer_identity="", last_error=str(e))
                raise

            # Peers may already have connected between relay start and now
            connected = relay.registry.identities()
            await self._update(
                role=ConnectionRole.HOSTING,
                peer_identity=connected[-1] if connected else "",
                last_error=None,
            )
            logger.info(f"Hosting as {self._state.local_identity} on port {relay.port}")

    def _host_record(self, port: int) -> PeerRecord:
        return PeerRecord(
            identity=self._state.local_identity,
            address=self._local_ip(),
            port=port,
        )

    async def discover(self, timeout: float = DISCOVERY_TIMEOUT) -> list[PeerRecord]:
        """Listen for hosts; the result replaces the discovered-peer stream."""
        if self._listener is not None:
            raise StateError("Discovery already in progress")
        listener = self._listener_factory()
        self._listener = listener
        await self._update(discovering=True)
        try:
            peers = await listener.discover(self._state.local_identity, timeout)
        except LanChatError as e:
            await self._update(last_error=str(e))
            raise
        finally:
            self._listener = None
            await self._update(discovering=False)

        async with self._lock:
            self._peers = tuple(peers)
        await self._emit("peers", peers)
        return peers

    def cancel_discovery(self) -> None:
        if self._listener is not None:
            self._listener.cancel()

    async def connect_to(self, peer: PeerRecord) -> None:
        """Join the relay advertised by ``peer``, leaving any current role first."""
        async with self._op_lock:
            if self._state.role == ConnectionRole.HOSTING:
                await self._stop_hosting()
            elif self._state.role == ConnectionRole.CONNECTED:
                await self._stop_client()

            client = self._client_factory()
            client.on_event(self._on_client_event)
            self_record = PeerRecord(
                identity=self._state.local_identity,
                address=self._local_ip(),
                port=0,
            )
            try:
                await client.connect(peer.address, peer.port, self_record)
            except LanChatError as e:
                logger.warning(f"Connection to {peer.identity} failed: {e}")
                await self._update(role=ConnectionRole.IDLE, peer_identity="", last_error=str(e))
                raise

            self._client = client
            await self._update(
                role=ConnectionRole.CONNECTED, peer_identity=peer.identity, last_error=None
            )
            logger.info(f"Connected to {peer.identity}")

    async def send(self, content: str, kind: MessageKind = MessageKind.TEXT) -> MessageEnvelope:
        """Echo locally, then dispatch over the active transport.

        A failed client delivery is recorded as ``last_error``, emitted as
        ``send_failed`` and re-raised; the local echo stays in history and
        nothing is retried.
        """
        async with self._send_lock:
            state = self._state
            if state.role == ConnectionRole.IDLE:
                raise StateError("Cannot send while idle")

            envelope = MessageEnvelope(sender=state.local_identity, content=content, kind=kind)
            await self._append(envelope)

            relay, client = self._relay, self._client
            if state.role == ConnectionRole.HOSTING and relay is not None:
                relay.submit(envelope)
            elif state.role == ConnectionRole.CONNECTED and client is not None:
                try:
                    await client.send(envelope)
                except LanChatError as e:
                    logger.warning(f"Send failed: {e}")
                    await self._update(last_error=str(e))
                    await self._emit(
                        "send_failed", {"message_id": str(envelope.id), "error": str(e)}
                    )
                    raise
            else:
                raise StateError("Transport went away before the message was sent")
            return envelope

    async def disconnect(self) -> None:
        """Leave the current role (stop hosting or disconnect from the host)."""
        async with self._op_lock:
            await self._stop_active()

    async def teardown(self) -> None:
        """Stop everything that is running. Always ends idle; safe to repeat."""
        self.cancel_discovery()
        async with self._op_lock:
            await self._stop_active()

    async def _stop_active(self) -> None:
        if self._client is not None:
            await self._stop_client()
        if self._relay is not None or self._beacon is not None:
            await self._stop_hosting()
        if self._state.role != ConnectionRole.IDLE:
            await self._update(role=ConnectionRole.IDLE, peer_identity="")

    async def _stop_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.disconnect()
            except Exception as e:
                logger.error(f"Error while disconnecting: {e}")
        await self._update(role=ConnectionRole.IDLE, peer_identity="")

    async def _stop_hosting(self) -> None:
        beacon, self._beacon = self._beacon, None
        relay, self._relay = self._relay, None
        if beacon is not None:
            try:
                await beacon.stop()
            except Exception as e:
                logger.error(f"Error while stopping beacon: {e}")
        if relay is not None:
            try:
                await relay.stop()
            except Exception as e:
                logger.error(f"Error while stopping relay: {e}")
        await self._update(role=ConnectionRole.IDLE, peer_identity="")
        logger.info("Stopped hosting")

    # --- Transport events ---

    async def _on_relay_event(self, event_type: str, data) -> None:
        if event_type == "message":
            await self._append(data)
        elif self._state.role != ConnectionRole.HOSTING:
            # start_hosting reconciles peer_identity from the registry once it is hosting
            return
        elif event_type == "peer_connected":
            await self._update(peer_identity=data.identity)
        elif event_type == "peer_disconnected":
            if self._state.peer_identity == data.identity:
                remaining = self._relay.registry.identities() if self._relay else []
                await self._update(peer_identity=remaining[-1] if remaining else "")
        elif event_type == "delivery_failed":
            await self._emit("delivery_failed", data)

    async def _on_client_event(self, event_type: str, data) -> None:
        if event_type == "message":
            await self._append(data)
