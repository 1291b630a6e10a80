"""Per-reader bounded buffer for live observation streams.

The store pushes into every subscription from whatever thread appends.
A push never blocks: when the buffer is full the oldest buffered
observation is discarded and counted, and the reader receives a single
``skipped`` event in its place before the remaining observations.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import deque
from collections.abc import Callable

from nwpd.models import EVENT_END, EVENT_OBSERVATION, EVENT_SKIPPED, Observation, StreamEvent

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class Subscription:
    def __init__(self, maxsize: int, on_close: Callable[["Subscription"], None] | None = None) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.id = next(_ids)
        self.maxsize = maxsize
        self.skipped_total = 0
        self._buffer: deque[Observation] = deque()
        self._pending_skips = 0
        self._closed = False
        self._lock = threading.Lock()
        self._wakeup = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    # ── Producer side (any thread) ───────────────────────────────────────

    def push(self, obs: Observation) -> None:
        with self._lock:
            if self._closed:
                return
            if len(self._buffer) >= self.maxsize:
                self._buffer.popleft()
                self._pending_skips += 1
                self.skipped_total += 1
            self._buffer.append(obs)
            loop = self._loop
        self._wake(loop)

    def preload(self, backlog: list[Observation]) -> None:
        """Fill the buffer before the subscription is published to the store."""
        for obs in backlog:
            self.push(obs)

    def close(self) -> None:
        """End the stream. Buffered observations are still delivered first."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            loop = self._loop
        self._wake(loop)
        if self._on_close is not None:
            self._on_close(self)

    def _wake(self, loop: asyncio.AbstractEventLoop | None) -> None:
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # reader's loop already closed; nobody is left to wake
            pass

    # ── Consumer side (one asyncio reader) ───────────────────────────────

    def get_nowait(self) -> StreamEvent | None:
        """Next event, or None when nothing is buffered yet."""
        with self._lock:
            return self._next_locked()

    async def get(self, timeout: float | None = None) -> StreamEvent | None:
        """Wait for the next event. Returns None if ``timeout`` elapses first."""
        with self._lock:
            self._loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                event = self._next_locked()
                if event is None:
                    self._wakeup.clear()
            if event is not None:
                return event
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                return None

    def _next_locked(self) -> StreamEvent | None:
        if self._pending_skips:
            count, self._pending_skips = self._pending_skips, 0
            return StreamEvent(EVENT_SKIPPED, count=count)
        if self._buffer:
            return StreamEvent(EVENT_OBSERVATION, observation=self._buffer.popleft())
        if self._closed:
            return StreamEvent(EVENT_END)
        return None
