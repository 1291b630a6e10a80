"""Agent runtime — wires config, probes, scheduler, store and discovery.

One Agent runs per process and network namespace. Background tasks:
  - one per job (JobScheduler)
  - store writer, draining the observation channel into the store
  - maintenance, running retention and predictive shedding
  - discovery listener, when the namespace needs one
"""

from __future__ import annotations

import asyncio
import logging
import random

from nwpd.agent.scheduler import JobScheduler, SystemClock
from nwpd.config import AgentSettings
from nwpd.jobs.config import AgentConfig
from nwpd.metrics import AgentMetrics
from nwpd.models import Endpoint, Observation
from nwpd.peers.registry import PeerRegistry
from nwpd.probes import DiscoveryListener, Probe, ProbeContext, build_probe
from nwpd.store.observations import ObservationStore

logger = logging.getLogger(__name__)


class Agent:
    """A single network-problem-detector agent.

    Construction validates the job set (ConfigurationError) and opens the
    store (StoreError); both are fatal. ``start`` and ``shutdown`` must run
    on the event loop that serves the query service.
    """

    def __init__(
        self,
        config: AgentConfig,
        host_network: bool,
        settings: AgentSettings,
        *,
        metrics: AgentMetrics | None = None,
        clock: SystemClock | None = None,
        rng: random.Random | None = None,
        serve_metrics: bool = True,
    ) -> None:
        self.config = config
        self.host_network = host_network
        self.settings = settings
        self.network = config.network(host_network)
        self.namespace = "host" if host_network else "pod"
        self.identity = settings.identity(host_network)
        self.own_endpoint = Endpoint(
            hostname=self.identity, ip=settings.own_ip(host_network), port=self.network.rpc_port,
        )
        self.metrics = metrics or AgentMetrics()
        self.clock = clock or SystemClock()
        self.serve_metrics = serve_metrics

        self.registry = PeerRegistry(
            ttl=config.discovery_ttl_multiple * self.network.discovery_period, clock=self.clock.now,
        )
        self.ctx = ProbeContext(
            source=self.identity,
            own_endpoint=self.own_endpoint,
            cluster=config.cluster,
            registry=self.registry,
            fanout=config.fanout,
        )
        self.probes: list[Probe] = [build_probe(job, config, self.ctx) for job in self.network.jobs]

        store_args = dict(
            retention=config.retention_seconds,
            capacity=config.store_capacity,
            drop_factor=config.drop_factor,
            source=self.identity,
            own_endpoint=self.own_endpoint,
            metrics=self.metrics,
            shed_window=config.shed_window,
            clock=self.clock.now,
        )
        if config.output_dir:
            self.store = ObservationStore.open(config.output_dir, self.network.data_file_prefix, **store_args)
        else:
            self.store = ObservationStore(**store_args)

        self.channel: asyncio.Queue[list[Observation] | None] = asyncio.Queue()
        self.scheduler = JobScheduler(self.probes, self.channel, metrics=self.metrics, clock=self.clock, rng=rng)
        self.listener: DiscoveryListener | None = None
        if self.network.runs_discovery_listener:
            self.listener = DiscoveryListener(
                self.registry, self.identity, config.discovery_group, config.discovery_port,
            )

        self._writer: asyncio.Task[None] | None = None
        self._maintenance: asyncio.Task[None] | None = None
        self._started_at: float | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._shutting_down = False

    # ── Status ───────────────────────────────────────────────────────────

    @property
    def uptime(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.clock.monotonic() - self._started_at

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._started_at = self.clock.monotonic()
        self._writer = asyncio.create_task(self._write_loop(), name="store-writer")
        self._maintenance = asyncio.create_task(self._maintenance_loop(), name="store-maintenance")

        if self.listener is not None:
            try:
                await self.listener.start()
            except OSError:
                logger.exception("Discovery listener failed to start; peers limited to cluster config")
                self.listener = None

        if self.serve_metrics:
            try:
                self.metrics.serve(self.network.metrics_port, addr=self.settings.bind_host)
                logger.info("Metrics on %s:%d", self.settings.bind_host, self.network.metrics_port)
            except OSError as e:
                logger.error("Cannot serve metrics on port %d: %s", self.network.metrics_port, e)

        await self.scheduler.start()
        logger.info(
            "Agent %s started in %s network: %d jobs, rpc port %d",
            self.identity, self.namespace, len(self.probes), self.network.rpc_port,
        )

    def request_shutdown(self) -> None:
        """Stop new ticks and end every live stream. Safe to call repeatedly."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutdown requested")
        self.scheduler.request_stop()
        self.store.close_subscriptions()

    def request_shutdown_threadsafe(self) -> None:
        """request_shutdown for signal handlers and foreign threads."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.request_shutdown)
        else:
            self.request_shutdown()

    async def shutdown(self, grace: float | None = None) -> None:
        grace = self.settings.shutdown_grace if grace is None else grace
        self.request_shutdown()
        await self.scheduler.stop(grace)

        # Drain everything the probes produced, then let the writer exit
        if self._writer is not None:
            self.channel.put_nowait(None)
            await self._writer
            self._writer = None

        self.store.close_subscriptions()
        if self.listener is not None:
            self.listener.stop()
        if self._maintenance is not None:
            self._maintenance.cancel()
            await asyncio.gather(self._maintenance, return_exceptions=True)
            self._maintenance = None
        self.store.close()
        logger.info("Agent %s stopped", self.identity)

    # ── Background tasks ─────────────────────────────────────────────────

    async def _write_loop(self) -> None:
        loop = asyncio.get_running_loop()
        done = False
        while not done:
            item = await self.channel.get()
            if item is None:
                break
            batch = list(item)
            while not self.channel.empty():
                more = self.channel.get_nowait()
                if more is None:
                    done = True
                    break
                batch.extend(more)
            try:
                await loop.run_in_executor(None, self.store.append_many, batch)
            except Exception:
                logger.exception("Store writer failed, %d observations lost", len(batch))

    async def _maintenance_loop(self) -> None:
        sweep = self.config.retention_sweep_interval
        tick = min(self.config.shed_check_interval, sweep)
        next_retention = self.clock.monotonic() + sweep
        loop = asyncio.get_running_loop()
        while True:
            await self.clock.sleep(tick)
            try:
                now = self.clock.monotonic()
                if now >= next_retention:
                    await loop.run_in_executor(None, self.store.expire)
                    next_retention = now + sweep
                self.store.check_shedding(horizon=max(0.0, next_retention - now))
                self.metrics.known_peers.set(len(self.registry))
            except Exception:
                logger.exception("Store maintenance failed")

    # ── Introspection ────────────────────────────────────────────────────

    def health(self) -> dict:
        return {
            "status": "stopping" if self._shutting_down else "ok",
            "uptime_seconds": round(self.uptime, 3),
            "store_size": len(self.store),
            "identity": self.identity,
            "namespace": self.namespace,
        }
