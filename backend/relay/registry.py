"""Connected-peer registry owned by the relay server."""

import asyncio
import logging

from discovery.models import PeerRecord

logger = logging.getLogger(__name__)


class PeerRegistry:
    """Maps peer identity to its last-known endpoint.

    Entries are only added by connect and removed by disconnect; there is no
    expiry, so a peer that vanishes without disconnecting stays until clear().
    """

    def __init__(self) -> None:
        self._peers: dict[str, PeerRecord] = {}
        self._lock = asyncio.Lock()

    async def add(self, record: PeerRecord) -> bool:
        """Insert or update a peer. Returns True if the identity is new."""
        async with self._lock:
            is_new = record.identity not in self._peers
            self._peers[record.identity] = record
        return is_new

    async def remove(self, identity: str) -> PeerRecord | None:
        """Remove a peer if present. Returns the removed record, if any."""
        async with self._lock:
            return self._peers.pop(identity, None)

    async def snapshot(self, exclude: str | None = None) -> list[PeerRecord]:
        """Registry contents in insertion order, optionally without one identity."""
        async with self._lock:
            return [p for p in self._peers.values() if p.identity != exclude]

    async def clear(self) -> None:
        async with self._lock:
            self._peers.clear()

    def identities(self) -> list[str]:
        return list(self._peers)

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, identity: str) -> bool:
        return identity in self._peers
