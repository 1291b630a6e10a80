"""Job scheduler — runs every job of one network namespace on its period.

One asyncio task per job. Each execution runs the blocking probe in a
worker thread, bounded by the job's execution timeout, and hands the
resulting observations to the store writer over a channel. A job never
overlaps itself: the next tick is computed only after the current
execution returned, and ticks missed while it ran are skipped. A probe
thread abandoned by the execution timeout also blocks new runs of its
job until it returns.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace

from nwpd.errors import ProbeError
from nwpd.metrics import AgentMetrics
from nwpd.models import Endpoint, Observation, failure, timeout
from nwpd.probes.base import Probe

logger = logging.getLogger(__name__)

# Share of the execution timeout handed to the probe itself, so that
# regular network timeouts are reported by the probe with their details.
PROBE_DEADLINE_SHARE = 0.9


class SystemClock:
    """Wall clock, monotonic clock and sleep used by the scheduler."""

    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class JobScheduler:
    """Drives a fixed set of probes until stopped.

    Observations are put on ``channel`` as one list per execution.
    """

    def __init__(
        self,
        probes: Sequence[Probe],
        channel: asyncio.Queue[list[Observation]],
        metrics: AgentMetrics | None = None,
        clock: SystemClock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.probes = list(probes)
        self.channel = channel
        self.metrics = metrics
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self._executor = ThreadPoolExecutor(
            max_workers=max(4, len(self.probes) * 2), thread_name_prefix="job",
        )
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._executing: set[str] = set()
        self._in_flight: dict[str, Future[list[Observation]]] = {}
        self._last_timestamp: dict[str, float] = {}
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    async def start(self) -> None:
        if self._tasks:
            return
        if not self.probes:
            logger.info("No jobs configured — scheduler idle")
            return
        for probe in self.probes:
            self._tasks[probe.job.id] = asyncio.create_task(
                self._job_loop(probe), name=f"job-{probe.job.id}",
            )
        logger.info("Scheduler started: %d jobs", len(self._tasks))

    def request_stop(self) -> None:
        """Stop issuing ticks. Idle jobs are cancelled, running ones may finish."""
        if self._stopping:
            return
        self._stopping = True
        for job_id, task in self._tasks.items():
            if job_id not in self._executing:
                task.cancel()

    async def stop(self, grace: float) -> None:
        """Stop ticking and wait up to ``grace`` seconds for in-flight executions."""
        self.request_stop()
        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace)
            for task in pending:
                logger.warning("Job %s did not finish within %.1fs grace, cancelling", task.get_name(), grace)
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Scheduler stopped")

    async def _job_loop(self, probe: Probe) -> None:
        job = probe.job
        next_tick = self.clock.monotonic() + self.rng.uniform(0, job.period)
        try:
            while not self._stopping:
                delay = next_tick - self.clock.monotonic()
                if delay > 0:
                    await self.clock.sleep(delay)
                if self._stopping:
                    break

                started = self.clock.monotonic()
                self._executing.add(job.id)
                try:
                    await self.execute(probe)
                finally:
                    self._executing.discard(job.id)

                next_tick = started + job.period
                now = self.clock.monotonic()
                if next_tick < now:
                    logger.debug(
                        "Job %s overran its period (%.2fs > %.2fs)", job.id, now - started, job.period,
                    )
                    next_tick = now
        except asyncio.CancelledError:
            pass

    async def execute(self, probe: Probe) -> list[Observation]:
        """Run one execution of ``probe`` and publish its observations."""
        job = probe.job
        source = probe.ctx.source
        destinations: list[Endpoint] = []
        limit = job.execution_timeout
        previous = self._in_flight.get(job.id)
        if previous is not None and not previous.done():
            logger.warning("Job %s skipped: its timed out execution is still running", job.id)
            return []
        try:
            destinations = probe.destinations()
            future = self._executor.submit(probe.run, destinations, limit * PROBE_DEADLINE_SHARE)
            self._in_flight[job.id] = future
            observations = await asyncio.wait_for(asyncio.wrap_future(future), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Job %s exceeded its execution timeout of %.2fs", job.id, limit)
            now = self.clock.now()
            observations = [
                timeout(job.id, source, d, f"execution exceeded {limit:.2f}s", timestamp=now)
                for d in destinations or [probe.ctx.own_endpoint]
            ]
        except ProbeError as e:
            now = self.clock.now()
            observations = [
                failure(job.id, source, d, str(e), timestamp=now)
                for d in destinations or [probe.ctx.own_endpoint]
            ]
        except Exception as e:
            logger.exception("Job %s failed unexpectedly", job.id)
            detail = f"{type(e).__name__}: {e}"
            now = self.clock.now()
            observations = [
                failure(job.id, source, d, detail, timestamp=now)
                for d in destinations or [probe.ctx.own_endpoint]
            ]

        observations = self._stamp(job.id, observations)
        if self.metrics:
            self.metrics.record_run(job.id, observations)
        if observations:
            self.channel.put_nowait(observations)
        logger.debug(
            "Job %s: %d destinations, %d failed",
            job.id, len(destinations), sum(1 for o in observations if not o.ok),
        )
        return observations

    def _stamp(self, job_id: str, observations: list[Observation]) -> list[Observation]:
        """Order by timestamp and clamp so the job's stream never goes back in time."""
        last = self._last_timestamp.get(job_id, float("-inf"))
        stamped = []
        for obs in sorted(observations, key=lambda o: o.timestamp):
            if obs.timestamp < last:
                obs = replace(obs, timestamp=last)
            last = obs.timestamp
            stamped.append(obs)
        if stamped:
            self._last_timestamp[job_id] = last
        return stamped
