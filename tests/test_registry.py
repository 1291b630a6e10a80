"""Tests for the discovery peer registry."""

from __future__ import annotations

from nwpd.models import Endpoint
from nwpd.peers.registry import PeerRegistry

from tests.conftest import T0, FakeClock

A = Endpoint("pod-a", "100.96.0.10", 8880)
B = Endpoint("pod-b", "100.96.1.10", 8880)


class TestPeerRegistry:
    def test_upsert_and_snapshot(self, clock: FakeClock) -> None:
        reg = PeerRegistry(ttl=180, clock=clock.now)
        assert reg.upsert("pod-a", A, T0)
        assert reg.upsert("pod-b", B, T0)
        assert reg.snapshot() == frozenset({A, B})
        assert len(reg) == 2

    def test_last_write_wins_by_timestamp(self, clock: FakeClock) -> None:
        reg = PeerRegistry(ttl=180, clock=clock.now)
        moved = Endpoint("pod-a", "100.96.2.10", 8880)
        reg.upsert("pod-a", moved, T0 + 10)
        # A delayed, older announcement must not overwrite the newer one
        assert not reg.upsert("pod-a", A, T0)
        assert reg.snapshot() == frozenset({moved})

    def test_newer_announcement_moves_peer(self, clock: FakeClock) -> None:
        reg = PeerRegistry(ttl=180, clock=clock.now)
        reg.upsert("pod-a", A, T0)
        moved = Endpoint("pod-a", "100.96.2.10", 8880)
        assert reg.upsert("pod-a", moved, T0 + 1)
        assert reg.snapshot() == frozenset({moved})

    def test_ttl_eviction_is_lazy(self, clock: FakeClock) -> None:
        reg = PeerRegistry(ttl=180, clock=clock.now)
        reg.upsert("pod-a", A, T0)
        clock.advance(100)
        reg.upsert("pod-b", B, T0 + 100)

        clock.advance(50)
        assert reg.snapshot() == frozenset({A, B})

        clock.advance(60)  # pod-a last heard from 210s ago
        assert reg.snapshot() == frozenset({B})
        assert [e.identity for e in reg.entries()] == ["pod-b"]

    def test_liveness_uses_receipt_time(self, clock: FakeClock) -> None:
        reg = PeerRegistry(ttl=180, clock=clock.now)
        lagging = Endpoint("pod-a", "100.96.0.10", 8880)
        ahead = Endpoint("pod-b", "100.96.1.10", 8880)
        # Sender clocks are 300s behind and 3600s ahead of ours
        reg.upsert("pod-a", lagging, T0 - 300)
        reg.upsert("pod-b", ahead, T0 + 3600)
        assert reg.snapshot() == frozenset({lagging, ahead})

        clock.advance(181)
        assert reg.snapshot() == frozenset()

    def test_announcement_order_uses_sender_time(self, clock: FakeClock) -> None:
        reg = PeerRegistry(ttl=180, clock=clock.now)
        reg.upsert("pod-a", A, T0 - 300)
        clock.advance(60)
        assert reg.upsert("pod-a", A, T0 - 240)
        [entry] = reg.entries()
        assert entry.announced == T0 - 240
        assert entry.last_seen == T0 + 60

    def test_snapshot_at_explicit_time(self, clock: FakeClock) -> None:
        reg = PeerRegistry(ttl=60, clock=clock.now)
        reg.upsert("pod-a", A, T0)
        assert reg.snapshot(now=T0 + 30) == frozenset({A})
        assert reg.snapshot(now=T0 + 61) == frozenset()

    def test_snapshot_is_immutable_copy(self, clock: FakeClock) -> None:
        reg = PeerRegistry(ttl=180, clock=clock.now)
        reg.upsert("pod-a", A, T0)
        snap = reg.snapshot()
        reg.upsert("pod-b", B, T0)
        assert snap == frozenset({A})
