"""Tests for multicast peer discovery."""

from __future__ import annotations

import asyncio
import json
import socket
from unittest.mock import patch

import pytest

from nwpd.errors import ProbeError, ProtocolError
from nwpd.jobs.config import ClusterConfig, DiscoveryCheck, Job
from nwpd.models import Endpoint, Outcome
from nwpd.peers.registry import PeerRegistry
from nwpd.probes.base import ProbeContext
from nwpd.probes.discovery import (
    MAX_DATAGRAM,
    DiscoveryListener,
    DiscoveryProbe,
    encode_announcement,
    parse_announcement,
    send_announcement,
)

from tests.conftest import OWN, T0, FakeClock

PEER = Endpoint("pod-b", "100.96.1.10", 8880)
ADDR = ("100.96.1.10", 37373)


@pytest.fixture
def registry(clock: FakeClock) -> PeerRegistry:
    return PeerRegistry(ttl=180, clock=clock.now)


@pytest.fixture
def listener(registry: PeerRegistry) -> DiscoveryListener:
    return DiscoveryListener(registry, "pod-a", "239.255.77.77", 37373)


class TestAnnouncementFormat:
    def test_encode_parse(self) -> None:
        data = encode_announcement("pod-b", PEER, timestamp=T0)
        identity, endpoint, ts = parse_announcement(data)
        assert identity == "pod-b"
        assert endpoint == PEER
        assert endpoint.hostname == "pod-b"
        assert ts == T0

    @pytest.mark.parametrize("data", [
        b"\xff\xfe garbage",
        b"[1, 2, 3]",
        b'{"service": "something-else", "identity": "x"}',
        b'{"service": "network-problem-detector", "identity": "x"}',
    ])
    def test_rejects_malformed(self, data: bytes) -> None:
        with pytest.raises(ProtocolError):
            parse_announcement(data)

    def test_rejects_empty_identity(self) -> None:
        with pytest.raises(ProtocolError):
            parse_announcement(encode_announcement("", PEER, timestamp=T0))


class TestListener:
    def test_upserts_peer(self, listener: DiscoveryListener, registry: PeerRegistry) -> None:
        assert listener.handle_datagram(encode_announcement("pod-b", PEER, T0), ADDR)
        assert registry.snapshot() == frozenset({PEER})
        assert listener.received == 1

    def test_ignores_own_announcement(self, listener: DiscoveryListener, registry: PeerRegistry) -> None:
        assert not listener.handle_datagram(encode_announcement("pod-a", OWN, T0), ADDR)
        assert len(registry) == 0
        assert listener.received == 0

    def test_ignores_malformed(self, listener: DiscoveryListener, registry: PeerRegistry) -> None:
        assert not listener.handle_datagram(b"not json", ADDR)
        assert len(registry) == 0

    def test_ignores_oversized(self, listener: DiscoveryListener, registry: PeerRegistry) -> None:
        raw = json.loads(encode_announcement("pod-b", PEER, T0))
        raw["padding"] = "x" * MAX_DATAGRAM
        assert not listener.handle_datagram(json.dumps(raw).encode(), ADDR)
        assert len(registry) == 0

    def test_stale_announcement_does_not_win(self, listener: DiscoveryListener, registry: PeerRegistry) -> None:
        moved = Endpoint("pod-b", "100.96.2.10", 8880)
        listener.handle_datagram(encode_announcement("pod-b", moved, T0 + 5), ADDR)
        assert not listener.handle_datagram(encode_announcement("pod-b", PEER, T0), ADDR)
        assert registry.snapshot() == frozenset({moved})

    def test_bind_failure_closes_socket(self, listener: DiscoveryListener) -> None:
        with patch("nwpd.probes.discovery.socket.socket") as sock_cls:
            sock = sock_cls.return_value
            sock.bind.side_effect = OSError(98, "Address already in use")
            with pytest.raises(OSError):
                listener._open_socket()
        sock.close.assert_called_once()

    def test_receives_over_udp(self, registry: PeerRegistry) -> None:
        probe_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        probe_sock.bind(("127.0.0.1", 0))
        port = probe_sock.getsockname()[1]
        probe_sock.close()

        async def scenario() -> None:
            listener = DiscoveryListener(registry, "pod-a", "239.255.77.77", port)
            await listener.start()
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
                    sender.sendto(encode_announcement("pod-b", PEER, T0), ("127.0.0.1", port))
                for _ in range(100):
                    if listener.received:
                        break
                    await asyncio.sleep(0.01)
            finally:
                listener.stop()

        asyncio.run(scenario())
        assert registry.snapshot() == frozenset({PEER})


class TestDiscoveryProbe:
    def _probe(self, registry: PeerRegistry, emit: bool) -> DiscoveryProbe:
        ctx = ProbeContext(source="pod-a", own_endpoint=OWN, cluster=ClusterConfig(), registry=registry)
        job = Job("discovery", DiscoveryCheck(emit_peer_count=emit), 60.0)
        return DiscoveryProbe(job, ctx, "239.255.77.77", 37373)

    def test_announces_own_endpoint(self, registry: PeerRegistry) -> None:
        probe = self._probe(registry, emit=False)
        with patch("nwpd.probes.discovery.send_announcement") as send:
            assert probe.run(probe.destinations(), 1.0) == []
        payload, group, port = send.call_args.args
        identity, endpoint, _ = parse_announcement(payload)
        assert (identity, endpoint) == ("pod-a", OWN)
        assert (group, port) == ("239.255.77.77", 37373)

    def test_emits_peer_count(self, registry: PeerRegistry) -> None:
        registry.upsert("pod-b", PEER, T0)
        registry.upsert("pod-c", Endpoint("pod-c", "100.96.2.10", 8880), T0)
        probe = self._probe(registry, emit=True)
        with patch("nwpd.probes.discovery.send_announcement"):
            [obs] = probe.run(probe.destinations(), 1.0)
        assert obs.outcome == Outcome.SUCCESS
        assert obs.count == 2
        assert obs.job_id == "discovery"

    def test_send_failure_is_probe_error(self) -> None:
        with patch("nwpd.probes.discovery.socket.socket", side_effect=OSError(101, "Network is unreachable")):
            with pytest.raises(ProbeError, match="announce failed"):
                send_announcement(b"{}", "239.255.77.77", 37373)
