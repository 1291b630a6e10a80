"""Peer registry — the live set of agents learned via discovery.

Entries are refreshed by the discovery listener and evicted lazily on
read once nothing has been heard from them for ``ttl`` seconds. The
sender's announcement timestamp only orders announcements from the same
peer; liveness is measured on the local clock at receipt. The registry
is bounded by the node count, so no background sweep is needed.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from nwpd.models import Endpoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerEntry:
    identity: str
    endpoint: Endpoint
    announced: float
    last_seen: float


class PeerRegistry:
    """Thread-safe identity -> endpoint map with TTL-based liveness."""

    def __init__(self, ttl: float, clock=time.time) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, PeerEntry] = {}

    def upsert(self, identity: str, endpoint: Endpoint, timestamp: float) -> bool:
        """Record an announcement. Returns False if a newer one is already known."""
        with self._lock:
            current = self._entries.get(identity)
            if current is not None and current.announced > timestamp:
                return False
            if current is None:
                logger.info("Discovered peer %s at %s", identity, endpoint.address)
            elif current.endpoint != endpoint:
                logger.info(
                    "Peer %s moved %s -> %s", identity, current.endpoint.address, endpoint.address,
                )
            self._entries[identity] = PeerEntry(identity, endpoint, timestamp, self._clock())
            return True

    def snapshot(self, now: float | None = None) -> frozenset[Endpoint]:
        """Endpoints of all peers seen within the TTL."""
        return frozenset(e.endpoint for e in self.entries(now))

    def entries(self, now: float | None = None) -> list[PeerEntry]:
        now = self._clock() if now is None else now
        cutoff = now - self.ttl
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.last_seen < cutoff]
            for key in expired:
                logger.info("Peer %s expired (not seen for %.0fs)", key, now - self._entries[key].last_seen)
                del self._entries[key]
            return sorted(self._entries.values(), key=lambda e: e.identity)

    def __len__(self) -> int:
        return len(self.entries())
