"""Peer discovery over UDP multicast.

Every agent periodically multicasts a small JSON announcement with its
identity and query-service endpoint. A long-lived listener joins the same
group and refreshes the PeerRegistry from what it hears. There are no
acknowledgements; a lost announcement is healed by the next one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import struct
import time
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from nwpd.errors import ProbeError, ProtocolError
from nwpd.jobs.config import DiscoveryCheck, Job
from nwpd.models import Endpoint, Observation, success
from nwpd.peers.registry import PeerRegistry
from nwpd.probes.base import Probe, ProbeContext

logger = logging.getLogger(__name__)

SERVICE_NAME = "network-problem-detector"
MULTICAST_TTL = 2
MAX_DATAGRAM = 2048


# ── Wire format ──────────────────────────────────────────────────────────────


def encode_announcement(identity: str, endpoint: Endpoint, timestamp: float | None = None) -> bytes:
    return json.dumps({
        "service": SERVICE_NAME,
        "identity": identity,
        "endpoint": endpoint.to_dict(),
        "timestamp": time.time() if timestamp is None else timestamp,
    }, separators=(",", ":")).encode("utf-8")


def parse_announcement(data: bytes) -> tuple[str, Endpoint, float]:
    """Decode a datagram into (identity, endpoint, timestamp)."""
    try:
        raw: Any = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"not a JSON announcement: {e}") from e
    if not isinstance(raw, dict) or raw.get("service") != SERVICE_NAME:
        raise ProtocolError("not a network-problem-detector announcement")
    try:
        identity = str(raw["identity"])
        endpoint = Endpoint.from_dict(raw["endpoint"])
        timestamp = float(raw["timestamp"])
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"incomplete announcement: {e!r}") from e
    if not identity or not endpoint.ip:
        raise ProtocolError("announcement without identity or ip")
    return identity, endpoint, timestamp


def send_announcement(payload: bytes, group: str, port: int) -> None:
    """Multicast one datagram. Blocking; runs in a probe worker thread."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP) as sock:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, MULTICAST_TTL)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
            sock.sendto(payload, (group, port))
    except OSError as e:
        raise ProbeError("announce failed", str(e)) from e


# ── Announcing half ──────────────────────────────────────────────────────────


class DiscoveryProbe(Probe):
    """Announces this agent once per tick.

    Produces no observation unless ``emit_peer_count`` is set, in which case
    it reports the number of live peers as ``count``.
    """

    def __init__(self, job: Job, ctx: ProbeContext, group: str, port: int) -> None:
        super().__init__(job, ctx)
        self.group = group
        self.port = port

    def destinations(self) -> list[Endpoint]:
        return [Endpoint(hostname="discovery", ip=self.group, port=self.port)]

    def run(self, destinations: Sequence[Endpoint], timeout_s: float) -> list[Observation]:
        payload = encode_announcement(self.ctx.source, self.ctx.own_endpoint)
        for dest in destinations:
            send_announcement(payload, dest.ip, dest.port)

        spec: DiscoveryCheck = self.job.probe  # type: ignore[assignment]
        if not spec.emit_peer_count:
            return []
        peers = len(self.ctx.registry.entries())
        obs = success(self.job.id, self.ctx.source, destinations[0], 0.0)
        return [replace(obs, count=peers)]


# ── Listening half ───────────────────────────────────────────────────────────


class DiscoveryListener(asyncio.DatagramProtocol):
    """Joins the discovery group and feeds announcements into the registry."""

    def __init__(self, registry: PeerRegistry, identity: str, group: str, port: int) -> None:
        self.registry = registry
        self.identity = identity
        self.group = group
        self.port = port
        self.received = 0
        self._transport: asyncio.DatagramTransport | None = None

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        sock = self._open_socket()
        try:
            transport, _ = await loop.create_datagram_endpoint(lambda: self, sock=sock)
        except OSError:
            sock.close()
            raise
        self._transport = transport  # type: ignore[assignment]
        logger.info("Discovery listener on %s:%d", self.group, self.port)

    def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
            logger.info("Discovery listener stopped")

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(("", self.port))
        except OSError:
            sock.close()
            raise
        mreq = struct.pack("4s4s", socket.inet_aton(self.group), socket.inet_aton("0.0.0.0"))
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        except OSError as e:
            logger.warning("Cannot join discovery group %s: %s", self.group, e)
        sock.setblocking(False)
        return sock

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:  # type: ignore[override]
        self.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning("Discovery socket error: %s", exc)

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> bool:
        """Apply one announcement. Returns True when the registry was updated."""
        if len(data) > MAX_DATAGRAM:
            logger.debug("Oversized discovery datagram from %s ignored", addr[0])
            return False
        try:
            identity, endpoint, timestamp = parse_announcement(data)
        except ProtocolError as e:
            logger.debug("Malformed discovery datagram from %s: %s", addr[0], e)
            return False
        if identity == self.identity:
            return False
        self.received += 1
        return self.registry.upsert(identity, endpoint, timestamp)
