"""Observation store — bounded, retention-limited log with live fan-out.

Entries are kept in memory ordered by (timestamp, insertion seq) and
optionally mirrored to append-only hourly segments on disk. Appends never
wait on readers: queries work on a snapshot copied under the lock, and
live subscribers get their own bounded buffers.

When the store grows past its capacity (or is projected to before the
next retention pass) the oldest entries are shed down to the low-water
mark ``floor(capacity * (1 - drop_factor))``, never above ``capacity - 1``
so the marker fits. A single marker observation records how many were
dropped, so a higher drop factor frees more room per pass.
"""

from __future__ import annotations

import bisect
import itertools
import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

from nwpd.errors import StoreError
from nwpd.metrics import AgentMetrics
from nwpd.models import SHED_DETAIL, STORE_JOB_ID, Endpoint, Observation, Outcome
from nwpd.store.segments import SegmentLog
from nwpd.store.subscription import Subscription

logger = logging.getLogger(__name__)

_Entry = tuple[float, int, Observation]


class ObservationStore:
    def __init__(
        self,
        *,
        retention: float,
        capacity: int,
        drop_factor: float,
        source: str,
        own_endpoint: Endpoint,
        segments: SegmentLog | None = None,
        metrics: AgentMetrics | None = None,
        shed_window: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.retention = retention
        self.capacity = capacity
        self.drop_factor = drop_factor
        self.low_water = min(capacity - 1, math.floor(capacity * (1 - drop_factor)))
        self.source = source
        self.own_endpoint = own_endpoint
        self.shed_window = shed_window
        self.shed_total = 0
        self.write_failures = 0

        self._segments = segments
        self._metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: list[_Entry] = []
        self._seq = itertools.count()
        self._subscribers: list[Subscription] = []
        self._rate_buckets: deque[list[float]] = deque()  # [second, count]
        self._closed = False

    @classmethod
    def open(
        cls,
        output_dir: Path | str,
        prefix: str,
        **kwargs,
    ) -> "ObservationStore":
        """Store mirrored to segments under ``output_dir``, with history reloaded.

        Raises StoreError when the directory cannot be created.
        """
        segments = SegmentLog(output_dir, prefix)
        store = cls(segments=segments, **kwargs)
        store.restore()
        return store

    # ── Writes ───────────────────────────────────────────────────────────

    def append(self, obs: Observation) -> bool:
        return self.append_many([obs]) == 1

    def append_many(self, observations: Iterable[Observation]) -> int:
        """Persist and insert a batch. Returns how many were accepted.

        A failed disk write drops the batch; it is logged and counted, never
        raised to the caller.
        """
        batch = list(observations)
        if not batch:
            return 0
        if self._segments is not None:
            try:
                self._segments.write(batch)
            except StoreError as e:
                self.write_failures += len(batch)
                if self._metrics:
                    self._metrics.store_write_failures.inc(len(batch))
                logger.error("Dropping %d observations: %s", len(batch), e)
                return 0

        with self._lock:
            if self._closed:
                return 0
            for obs in batch:
                self._insert_locked(obs)
                for sub in self._subscribers:
                    sub.push(obs)
            self._count_rate_locked(len(batch))
            if len(self._entries) > self.capacity:
                self._shed_locked()
            size = len(self._entries)
        self._set_size(size)
        return len(batch)

    def _insert_locked(self, obs: Observation) -> None:
        entry = (obs.timestamp, next(self._seq), obs)
        if not self._entries or entry >= self._entries[-1]:
            self._entries.append(entry)
        else:
            bisect.insort(self._entries, entry)

    # ── Reads ────────────────────────────────────────────────────────────

    def query(
        self,
        start: float | None = None,
        end: float | None = None,
        job_id: str | None = None,
    ) -> Iterator[Observation]:
        """Observations with ``start <= timestamp < end``, oldest first.

        The range is captured now; iterating later does not see newer
        appends. Call again for a fresh view.
        """
        with self._lock:
            lo = bisect.bisect_left(self._entries, (start,)) if start is not None else 0
            hi = bisect.bisect_left(self._entries, (end,)) if end is not None else len(self._entries)
            snapshot = self._entries[lo:hi]
        return _iter_entries(snapshot, job_id)

    def subscribe(self, backlog_since: float | None = None, maxsize: int = 1000) -> Subscription:
        """Live tail of appended observations, optionally replaying a recent backlog.

        Backlog and live tail are joined under the store lock, so no
        observation is missed or delivered twice.
        """
        sub = Subscription(maxsize, on_close=self._unsubscribe)
        with self._lock:
            if backlog_since is not None:
                lo = bisect.bisect_left(self._entries, (backlog_since,))
                sub.preload([e[2] for e in self._entries[lo:]])
            closed = self._closed
            if not closed:
                self._subscribers.append(sub)
        if closed:
            sub.close()
        logger.debug("Subscription %d opened (%d buffered)", sub.id, len(sub))
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)
        if sub.skipped_total:
            logger.info("Subscription %d closed after skipping %d observations", sub.id, sub.skipped_total)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ── Maintenance ──────────────────────────────────────────────────────

    def expire(self, now: float | None = None) -> int:
        """Drop everything older than the retention window in one batch."""
        now = self._clock() if now is None else now
        cutoff = now - self.retention
        with self._lock:
            idx = bisect.bisect_left(self._entries, (cutoff,))
            if idx:
                del self._entries[:idx]
            size = len(self._entries)
        if self._segments is not None:
            self._segments.expire(cutoff)
        self._set_size(size)
        if idx:
            logger.info("Retention removed %d observations older than %.0fs", idx, self.retention)
        return idx

    def projected_rate(self, now: float | None = None) -> float:
        """Appends per second over the shed window."""
        now = self._clock() if now is None else now
        with self._lock:
            self._prune_rate_locked(now)
            total = sum(count for _, count in self._rate_buckets)
        return total / self.shed_window

    def check_shedding(self, horizon: float, now: float | None = None) -> int:
        """Shed ahead of time if the current rate would overflow within ``horizon`` seconds."""
        rate = self.projected_rate(now)
        with self._lock:
            size = len(self._entries)
            if size <= self.low_water or size + rate * horizon <= self.capacity:
                return 0
            dropped = self._shed_locked()
            size = len(self._entries)
        self._set_size(size)
        logger.warning(
            "Shed %d observations ahead of retention (rate %.1f/s, %.0fs to next pass)",
            dropped, rate, horizon,
        )
        return dropped

    def _shed_locked(self) -> int:
        excess = len(self._entries) - self.low_water
        if excess <= 0:
            return 0
        newest = self._entries[-1][0]
        del self._entries[:excess]
        marker = Observation(
            job_id=STORE_JOB_ID,
            source=self.source,
            destination=self.own_endpoint,
            outcome=Outcome.FAILURE,
            timestamp=max(self._clock(), newest),
            detail=SHED_DETAIL,
            count=excess,
        )
        # Markers stay in memory only; the shed entries remain on disk.
        self._insert_locked(marker)
        for sub in self._subscribers:
            sub.push(marker)
        self.shed_total += excess
        if self._metrics:
            self._metrics.store_shed.inc(excess)
        logger.warning("Store over capacity: dropped %d oldest observations", excess)
        return excess

    def _count_rate_locked(self, n: int) -> None:
        now = self._clock()
        second = math.floor(now)
        if self._rate_buckets and self._rate_buckets[-1][0] == second:
            self._rate_buckets[-1][1] += n
        else:
            self._rate_buckets.append([second, n])
        self._prune_rate_locked(now)

    def _prune_rate_locked(self, now: float) -> None:
        horizon = now - self.shed_window
        while self._rate_buckets and self._rate_buckets[0][0] < horizon:
            self._rate_buckets.popleft()

    def _set_size(self, size: int) -> None:
        if self._metrics:
            self._metrics.store_size.set(size)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def restore(self) -> int:
        """Reload retained observations from disk segments."""
        if self._segments is None:
            return 0
        since = self._clock() - self.retention
        loaded = self._segments.load(since)
        with self._lock:
            for obs in loaded:
                self._insert_locked(obs)
            if len(self._entries) > self.capacity:
                self._shed_locked()
            size = len(self._entries)
        self._set_size(size)
        if loaded:
            logger.info("Restored %d observations from %s", len(loaded), self._segments.directory)
        return len(loaded)

    def close_subscriptions(self) -> None:
        """End every live stream; readers receive an end-of-stream event."""
        with self._lock:
            subs = list(self._subscribers)
        for sub in subs:
            sub.close()

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.close_subscriptions()
        if self._segments is not None:
            self._segments.close()
        logger.info("Observation store closed (%d in memory)", len(self))


def _iter_entries(entries: list[_Entry], job_id: str | None) -> Iterator[Observation]:
    for _, _, obs in entries:
        if job_id is None or obs.job_id == job_id:
            yield obs
