"""
UDP-based LAN discovery.

A host periodically broadcasts a beacon carrying its Peer Record; a joining
device opens a bounded listening window and collects the beacons it hears.
"""

import asyncio
import logging
import socket
from typing import Callable

from config import BEACON_INTERVAL, DISCOVERY_PORT, DISCOVERY_TIMEOUT, MAX_DATAGRAM_SIZE
from discovery.models import PeerRecord, decode_beacon, encode_beacon
from errors import DiscoveryError

logger = logging.getLogger(__name__)


def _is_usable(ip: str) -> bool:
    return not ip.startswith("127.") and ip != "0.0.0.0"


def outbound_ipv4_address() -> str | None:
    """Address of the interface that carries LAN traffic, or None if there is no route."""
    # connect() on UDP sends nothing but picks the outbound interface
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect(("10.255.255.255", 1))
            ip = probe.getsockname()[0]
    except OSError as e:
        logger.debug(f"Routing probe failed: {e}")
        return None
    return ip if _is_usable(ip) else None


def local_ipv4_addresses() -> list[str]:
    """Return the non-loopback IPv4 addresses of this machine."""
    ips: set[str] = set()
    try:
        _, _, host_ips = socket.gethostbyname_ex(socket.gethostname())
        ips.update(host_ips)
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")

    outbound = outbound_ipv4_address()
    if outbound:
        ips.add(outbound)

    return sorted(ip for ip in ips if _is_usable(ip))


def get_local_ip() -> str:
    """The address to advertise: the outbound interface first, then any local one."""
    outbound = outbound_ipv4_address()
    if outbound:
        return outbound
    ips = local_ipv4_addresses()
    return ips[0] if ips else "127.0.0.1"


def broadcast_addresses() -> list[str]:
    """Limited broadcast plus the /24 broadcast address of every local interface."""
    targets = {"255.255.255.255"}
    for ip in local_ipv4_addresses():
        # Simple heuristic for /24 subnets
        parts = ip.split(".")
        if len(parts) == 4:
            parts[3] = "255"
            targets.add(".".join(parts))
    return sorted(targets)


class DiscoveryBeacon:
    """Advertises the local Peer Record by UDP broadcast until stopped."""

    def __init__(
        self,
        port: int = DISCOVERY_PORT,
        interval: float = BEACON_INTERVAL,
        targets: list[str] | None = None,
    ) -> None:
        self._port = port
        self._interval = interval
        self._targets = targets
        self._transport: asyncio.DatagramTransport | None = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, record: PeerRecord | Callable[[], PeerRecord]) -> None:
        """Open the sending socket and launch the broadcast loop.

        ``record`` may be a callable so the advertised address is rebuilt
        from current network state on every tick.
        """
        if self.is_running:
            return

        loop = asyncio.get_running_loop()
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        except OSError as e:
            raise DiscoveryError(f"Could not open beacon socket: {e}") from e
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            transport, _ = await loop.create_datagram_endpoint(
                asyncio.DatagramProtocol,
                sock=sock,
            )
        except OSError as e:
            sock.close()
            raise DiscoveryError(f"Could not open beacon socket: {e}") from e

        self._transport = transport
        self._stop.clear()
        record_factory = record if callable(record) else (lambda: record)
        self._task = asyncio.create_task(self._broadcast_loop(record_factory))
        logger.info(f"Advertising on UDP port {self._port} every {self._interval}s")

    async def stop(self) -> None:
        """Signal the loop to stop and release the socket. Safe to call repeatedly."""
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._transport:
            self._transport.close()
            self._transport = None
            logger.info("Advertising stopped")

    def send_once(self, record: PeerRecord) -> int:
        """Send one beacon to every target; returns how many sends succeeded."""
        data = encode_beacon(record)
        sent = 0
        for target in self._targets or broadcast_addresses():
            try:
                self._transport.sendto(data, (target, self._port))
                sent += 1
            except OSError as e:
                # Some interfaces might not support broadcast
                logger.debug(f"Beacon to {target} failed: {e}")
        return sent

    async def _broadcast_loop(self, record_factory: Callable[[], PeerRecord]) -> None:
        """Periodically send a discovery beacon."""
        while not self._stop.is_set():
            try:
                if self.send_once(record_factory()) == 0:
                    logger.warning("Beacon not sent: no reachable broadcast target")
            except Exception as e:
                logger.warning(f"Broadcast failed: {e}")

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving discovery beacons."""

    def __init__(self, listener: "DiscoveryListener"):
        self.listener = listener

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if len(data) > MAX_DATAGRAM_SIZE:
            logger.debug(f"Ignoring oversized packet ({len(data)} bytes) from {addr}")
            return
        record = decode_beacon(data)
        if record is None:
            logger.debug(f"Ignoring invalid discovery packet from {addr}")
            return
        self.listener.add_record(record)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryListener:
    """Collects advertised peers during one bounded discovery window."""

    def __init__(self, port: int = DISCOVERY_PORT, host: str = "0.0.0.0") -> None:
        self._port = port
        self._host = host
        self._self_identity = ""
        self._peers: dict[str, PeerRecord] = {}
        self._transport: asyncio.DatagramTransport | None = None
        self._cancel = asyncio.Event()
        self.ready = asyncio.Event()
        self.bound_port: int | None = None

    @property
    def is_listening(self) -> bool:
        return self._transport is not None

    def add_record(self, record: PeerRecord) -> None:
        """Record a beacon; the same identity seen again replaces the earlier record."""
        if record.identity == self._self_identity:
            return
        if record.identity not in self._peers:
            logger.info(f"Discovered peer: {record.identity} ({record.address}:{record.port})")
        self._peers[record.identity] = record

    def cancel(self) -> None:
        """Close the current window early; discover() returns what it has."""
        self._cancel.set()

    async def discover(
        self, self_identity: str, timeout: float = DISCOVERY_TIMEOUT
    ) -> list[PeerRecord]:
        """Listen for beacons until ``timeout`` elapses or cancel() is called."""
        if self.is_listening:
            raise DiscoveryError("Discovery already in progress")

        self._self_identity = self_identity
        self._peers = {}
        self._cancel.clear()
        self.ready.clear()

        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            # SO_REUSEADDR set BEFORE binding so a local host can share the port
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind((self._host, self._port))
        except OSError as e:
            sock.close()
            raise DiscoveryError(f"Could not bind discovery port {self._port}: {e}") from e

        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: DiscoveryProtocol(self),
                sock=sock,
            )
        except OSError as e:
            sock.close()
            raise DiscoveryError(f"Could not listen on discovery port {self._port}: {e}") from e

        self._transport = transport
        self.bound_port = sock.getsockname()[1]
        self.ready.set()
        logger.info(f"Listening for beacons on UDP port {self.bound_port} for {timeout}s")

        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=timeout)
            logger.info("Discovery cancelled")
        except asyncio.TimeoutError:
            pass
        finally:
            transport.close()
            self._transport = None
            self.ready.clear()

        logger.info(f"Discovery window closed with {len(self._peers)} peer(s)")
        return list(self._peers.values())
