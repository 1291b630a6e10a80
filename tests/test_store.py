"""Tests for the observation store, its segments and live subscriptions."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from nwpd.errors import StoreError
from nwpd.metrics import AgentMetrics
from nwpd.models import EVENT_END, EVENT_OBSERVATION, EVENT_SKIPPED, SHED_DETAIL, STORE_JOB_ID, Outcome
from nwpd.store import ObservationStore, SegmentLog, Subscription
from nwpd.store.segments import segment_key

from tests.conftest import OWN, T0, FakeClock, make_obs


def _store(clock: FakeClock, **overrides) -> ObservationStore:
    kwargs = dict(
        retention=3600.0, capacity=1000, drop_factor=0.5,
        source="pod-a", own_endpoint=OWN, clock=clock.now,
    )
    kwargs.update(overrides)
    return ObservationStore(**kwargs)


def _open(tmp_path: Path, clock: FakeClock, **overrides) -> ObservationStore:
    kwargs = dict(
        retention=3600.0, capacity=1000, drop_factor=0.5,
        source="pod-a", own_endpoint=OWN, clock=clock.now,
    )
    kwargs.update(overrides)
    return ObservationStore.open(tmp_path, "nwpd-pod", **kwargs)


def _drain(sub: Subscription) -> list:
    events = []
    while (event := sub.get_nowait()) is not None:
        events.append(event)
        if event.kind == EVENT_END:
            break
    return events


# ── Ordering and queries ─────────────────────────────────────────────────────


class TestOrdering:
    def test_out_of_order_appends_are_sorted(self, clock: FakeClock) -> None:
        store = _store(clock)
        for ts in (T0 + 3, T0 + 1, T0 + 2):
            store.append(make_obs(ts))
        assert [o.timestamp for o in store.query()] == [T0 + 1, T0 + 2, T0 + 3]

    def test_ties_keep_insertion_order(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.append(make_obs(T0, job_id="first"))
        store.append(make_obs(T0, job_id="second"))
        store.append(make_obs(T0 - 1, job_id="earlier"))
        assert [o.job_id for o in store.query()] == ["earlier", "first", "second"]


class TestQuery:
    def test_range_start_inclusive_end_exclusive(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.append_many(make_obs(T0 + i) for i in range(10))
        got = [o.timestamp for o in store.query(start=T0 + 2, end=T0 + 5)]
        assert got == [T0 + 2, T0 + 3, T0 + 4]

    def test_job_filter(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.append(make_obs(T0, job_id="tcp-p2api"))
        store.append(make_obs(T0 + 1, job_id="ping-n2n"))
        store.append(make_obs(T0 + 2, job_id="tcp-p2api"))
        assert [o.timestamp for o in store.query(job_id="tcp-p2api")] == [T0, T0 + 2]

    def test_query_is_a_snapshot(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.append(make_obs(T0))
        result = store.query()
        store.append(make_obs(T0 + 1))
        assert len(list(result)) == 1
        assert len(list(store.query())) == 2

    def test_empty_range(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.append(make_obs(T0))
        assert list(store.query(start=T0 + 10, end=T0 + 20)) == []


# ── Retention and shedding ───────────────────────────────────────────────────


class TestRetention:
    def test_expire_removes_old_entries(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.append(make_obs(T0 - 7200))
        store.append(make_obs(T0 - 100))
        assert store.expire() == 1
        assert [o.timestamp for o in store.query()] == [T0 - 100]

    def test_expire_at_explicit_time(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.append_many(make_obs(T0 + i) for i in range(5))
        assert store.expire(now=T0 + 3600 + 2) == 2
        assert len(store) == 3


class TestShedding:
    def test_overflow_sheds_to_low_water_and_marks(self, clock: FakeClock) -> None:
        metrics = AgentMetrics()
        store = _store(clock, capacity=10, drop_factor=0.5, metrics=metrics)
        for i in range(1, 12):
            store.append(make_obs(T0 + i))

        entries = list(store.query())
        assert [o.timestamp for o in entries[:-1]] == [T0 + i for i in range(7, 12)]
        marker = entries[-1]
        assert marker.is_shed_marker
        assert marker.job_id == STORE_JOB_ID
        assert marker.detail == SHED_DETAIL
        assert marker.outcome == Outcome.FAILURE
        assert marker.count == 6
        assert marker.destination == OWN
        assert marker.timestamp == T0 + 11
        assert store.shed_total == 6
        assert metrics.registry.get_sample_value("nwpd_store_shed_observations_total") == 6

    def test_size_never_exceeds_capacity(self, clock: FakeClock) -> None:
        store = _store(clock, capacity=10, drop_factor=0.5)
        for i in range(100):
            store.append(make_obs(T0 + i))
            assert len(store) <= 10

    def test_zero_drop_factor_sheds_only_the_overflow(self, clock: FakeClock) -> None:
        store = _store(clock, capacity=10, drop_factor=0.0)
        for i in range(1, 12):
            store.append(make_obs(T0 + i))

        entries = list(store.query())
        assert len(entries) == 10
        assert [o.timestamp for o in entries[:-1]] == [T0 + i for i in range(3, 12)]
        assert entries[-1].is_shed_marker
        assert entries[-1].count == 2

    def test_higher_drop_factor_sheds_more(self, clock: FakeClock) -> None:
        shed = {}
        for factor in (0.1, 0.5, 0.9):
            store = _store(clock, capacity=100, drop_factor=factor)
            store.append_many(make_obs(T0 + i) for i in range(101))
            shed[factor] = store.shed_total
            assert list(store.query())[-2].timestamp == T0 + 100
        assert shed[0.1] < shed[0.5] < shed[0.9]
        assert shed[0.5] == 51

    def test_predictive_shedding(self, clock: FakeClock) -> None:
        store = _store(clock, capacity=100, drop_factor=0.5, shed_window=60.0)
        store.append_many(make_obs(T0 - 60 + i) for i in range(60))
        assert store.projected_rate() == pytest.approx(1.0)

        assert store.check_shedding(horizon=60.0) == 10
        assert len(store) == 51  # low water plus the marker
        assert store.check_shedding(horizon=10.0) == 0

    def test_no_predictive_shedding_below_low_water(self, clock: FakeClock) -> None:
        store = _store(clock, capacity=100, drop_factor=0.5)
        store.append_many(make_obs(T0 + i) for i in range(40))
        assert store.check_shedding(horizon=3600.0) == 0
        assert len(store) == 40

    def test_rate_window_forgets_old_appends(self, clock: FakeClock) -> None:
        store = _store(clock, shed_window=60.0)
        store.append_many(make_obs(T0 + i) for i in range(30))
        clock.advance(120)
        assert store.projected_rate() == 0.0


# ── Subscriptions ────────────────────────────────────────────────────────────


class TestSubscriptions:
    def test_live_tail(self, clock: FakeClock) -> None:
        store = _store(clock)
        sub = store.subscribe()
        store.append(make_obs(T0))
        [event] = _drain(sub)
        assert event.kind == EVENT_OBSERVATION
        assert event.observation.timestamp == T0

    def test_slow_reader_gets_skipped_marker(self, clock: FakeClock) -> None:
        store = _store(clock)
        sub = store.subscribe(maxsize=5)
        for i in range(20):
            assert store.append(make_obs(T0 + i))

        events = _drain(sub)
        assert events[0].kind == EVENT_SKIPPED
        assert events[0].count == 15
        assert [e.observation.timestamp for e in events[1:]] == [T0 + i for i in range(15, 20)]
        assert sub.skipped_total == 15

    def test_fast_and_slow_readers(self, clock: FakeClock) -> None:
        store = _store(clock)
        fast = store.subscribe(maxsize=5)
        slow = store.subscribe(maxsize=5)
        received = []
        for i in range(50):
            store.append(make_obs(T0 + i))
            received.extend(e.observation.timestamp for e in _drain(fast))

        assert received == [T0 + i for i in range(50)]
        assert fast.skipped_total == 0
        slow_events = _drain(slow)
        assert slow_events[0].kind == EVENT_SKIPPED
        assert len(store) == 50

    def test_backlog_then_live_without_duplicates(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.append_many(make_obs(T0 + i) for i in range(5))
        sub = store.subscribe(backlog_since=T0 + 2)
        store.append(make_obs(T0 + 5))
        store.append(make_obs(T0 + 6))
        got = [e.observation.timestamp for e in _drain(sub)]
        assert got == [T0 + 2, T0 + 3, T0 + 4, T0 + 5, T0 + 6]

    def test_close_ends_stream_after_buffer(self, clock: FakeClock) -> None:
        store = _store(clock)
        sub = store.subscribe()
        store.append(make_obs(T0))
        store.close_subscriptions()
        events = _drain(sub)
        assert [e.kind for e in events] == [EVENT_OBSERVATION, EVENT_END]
        assert store.subscriber_count == 0

    def test_subscribe_after_close(self, clock: FakeClock) -> None:
        store = _store(clock)
        store.close()
        sub = store.subscribe()
        assert [e.kind for e in _drain(sub)] == [EVENT_END]
        assert not store.append(make_obs(T0))

    def test_reader_close_unsubscribes(self, clock: FakeClock) -> None:
        store = _store(clock)
        sub = store.subscribe()
        assert store.subscriber_count == 1
        sub.close()
        assert store.subscriber_count == 0

    def test_shed_marker_reaches_subscribers(self, clock: FakeClock) -> None:
        store = _store(clock, capacity=4, drop_factor=0.5)
        sub = store.subscribe(maxsize=100)
        for i in range(5):
            store.append(make_obs(T0 + i))
        events = _drain(sub)
        assert events[-1].observation.is_shed_marker
        assert events[-1].observation.count == 3


class TestAsyncGet:
    def test_timeout_returns_none(self) -> None:
        sub = Subscription(10)
        assert asyncio.run(sub.get(timeout=0.01)) is None

    def test_wakes_on_push_from_another_thread(self, clock: FakeClock) -> None:
        store = _store(clock)

        async def scenario():
            sub = store.subscribe()
            timer = threading.Timer(0.05, store.append, args=(make_obs(T0),))
            timer.start()
            try:
                return await sub.get(timeout=5.0)
            finally:
                timer.join()

        event = asyncio.run(scenario())
        assert event.kind == EVENT_OBSERVATION


# ── Persistence ──────────────────────────────────────────────────────────────


class TestSegments:
    def test_persist_and_reload(self, tmp_path: Path, clock: FakeClock) -> None:
        store = _open(tmp_path, clock)
        store.append_many(make_obs(T0 - 10 + i, job_id=f"j{i % 2}") for i in range(6))
        store.close()

        reopened = _open(tmp_path, clock)
        got = list(reopened.query())
        assert [o.timestamp for o in got] == [T0 - 10 + i for i in range(6)]
        assert got[1].job_id == "j1"
        assert got[0].destination.hostname == "api"

    def test_reload_skips_torn_line(self, tmp_path: Path, clock: FakeClock) -> None:
        store = _open(tmp_path, clock)
        store.append_many([make_obs(T0 - 2), make_obs(T0 - 1)])
        store.close()
        path = tmp_path / f"nwpd-pod-{segment_key(T0 - 1)}.ndjson"
        with open(path, "a", encoding="utf-8") as fh:
            fh.write('{"job_id": "tcp-p2api", "timest')

        reopened = _open(tmp_path, clock)
        assert len(reopened) == 2

    def test_reload_respects_retention(self, tmp_path: Path, clock: FakeClock) -> None:
        store = _open(tmp_path, clock)
        store.append_many([make_obs(T0 - 5000), make_obs(T0 - 10)])
        store.close()
        reopened = _open(tmp_path, clock)
        assert [o.timestamp for o in reopened.query()] == [T0 - 10]

    def test_reload_sheds_when_over_capacity(self, tmp_path: Path, clock: FakeClock) -> None:
        store = _open(tmp_path, clock)
        store.append_many(make_obs(T0 - 20 + i) for i in range(11))
        store.close()
        reopened = _open(tmp_path, clock, capacity=10)
        assert len(reopened) == 6
        assert list(reopened.query())[-1].is_shed_marker

    def test_expire_deletes_whole_segments(self, tmp_path: Path, clock: FakeClock) -> None:
        store = _open(tmp_path, clock)
        store.append_many([make_obs(T0 - 7200), make_obs(T0 - 10)])
        old = tmp_path / f"nwpd-pod-{segment_key(T0 - 7200)}.ndjson"
        assert old.exists()

        store.expire()
        assert not old.exists()
        assert (tmp_path / f"nwpd-pod-{segment_key(T0 - 10)}.ndjson").exists()

    def test_write_failure_drops_batch(self, tmp_path: Path, clock: FakeClock) -> None:
        metrics = AgentMetrics()
        store = _open(tmp_path, clock, metrics=metrics)
        with patch.object(SegmentLog, "write", side_effect=StoreError("disk full")):
            assert not store.append(make_obs(T0))
        assert len(store) == 0
        assert store.write_failures == 1
        assert metrics.registry.get_sample_value("nwpd_store_write_failures_total") == 1
        assert store.append(make_obs(T0 + 1))

    def test_unusable_directory(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(StoreError, match="cannot create output directory"):
            SegmentLog(blocker / "sub", "nwpd-pod")

    def test_foreign_files_ignored(self, tmp_path: Path, clock: FakeClock) -> None:
        (tmp_path / "nwpd-host-20231114-22.ndjson").write_text("{}\n")
        (tmp_path / "notes.txt").write_text("hello")
        log = SegmentLog(tmp_path, "nwpd-pod")
        assert log.segments() == []
