"""Shared probe plumbing: context, destination resolution, fan-out."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from nwpd.errors import ProbeError
from nwpd.jobs.config import ClusterConfig, Job
from nwpd.models import Endpoint, Observation, failure, success, timeout
from nwpd.peers.registry import PeerRegistry

logger = logging.getLogger(__name__)


@dataclass
class ProbeContext:
    """Everything a probe needs besides its own job definition."""

    source: str
    own_endpoint: Endpoint
    cluster: ClusterConfig
    registry: PeerRegistry
    fanout: int = 8

    def peer_endpoints(self) -> list[Endpoint]:
        """Registry peers plus the statically known pod-network agents."""
        found = set(self.registry.snapshot())
        found.update(self.pod_endpoints())
        found.discard(self.own_endpoint)
        return sorted(found, key=lambda e: (e.ip, e.port))

    def pod_endpoints(self) -> list[Endpoint]:
        return [
            Endpoint(hostname=p.pod_name or p.ip, ip=p.ip, port=p.port)
            for p in self.cluster.pod_endpoints
        ]

    def node_hosts(self) -> list[tuple[str, str]]:
        """(hostname, ip) of every known node, from config and discovery."""
        hosts: dict[str, str] = {n.ip: n.hostname for n in self.cluster.nodes}
        for ep in self.registry.snapshot():
            hosts.setdefault(ep.ip, ep.hostname)
        return sorted(((name, ip) for ip, name in hosts.items()), key=lambda h: h[1])


class Probe:
    """One job's check logic. Instances are built once at config load.

    ``run`` is blocking and is executed in a worker thread by the
    scheduler. It returns one observation per destination.
    """

    def __init__(self, job: Job, ctx: ProbeContext) -> None:
        self.job = job
        self.ctx = ctx

    def destinations(self) -> list[Endpoint]:
        raise NotImplementedError

    def run(self, destinations: Sequence[Endpoint], timeout_s: float) -> list[Observation]:
        raise NotImplementedError

    def _fan_out(
        self,
        destinations: Sequence[Endpoint],
        check: Callable[[Endpoint, float], float],
        timeout_s: float,
    ) -> list[Observation]:
        """Run ``check`` against every destination, at most ``fanout`` at once.

        ``check`` returns the measured latency or raises ProbeError. The
        per-destination timeout is split so that all waves fit into
        ``timeout_s``.
        """
        if not destinations:
            return []
        workers = max(1, min(self.ctx.fanout, len(destinations)))
        waves = math.ceil(len(destinations) / workers)
        per_check = timeout_s / waves

        def one(dest: Endpoint) -> Observation:
            try:
                latency = check(dest, per_check)
                return success(self.job.id, self.ctx.source, dest, latency)
            except ProbeError as e:
                if e.timed_out:
                    return timeout(self.job.id, self.ctx.source, dest, str(e))
                return failure(self.job.id, self.ctx.source, dest, str(e))
            except Exception as e:
                logger.exception("Unexpected error probing %s for job %s", dest.address, self.job.id)
                return failure(self.job.id, self.ctx.source, dest, f"{type(e).__name__}: {e}")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"probe-{self.job.id}") as pool:
            return list(pool.map(one, destinations))


def elapsed_since(t0: float) -> float:
    return time.perf_counter() - t0
