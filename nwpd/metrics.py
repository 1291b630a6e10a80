"""Prometheus metrics for one agent process.

Each Agent owns its own CollectorRegistry so that several agents (or
tests) can live in one interpreter without name collisions.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, start_http_server

from nwpd.models import Observation

# Probe latencies are sub-second on a healthy cluster network
LATENCY_BUCKETS = (0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


class AgentMetrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.probe_runs = Counter(
            "nwpd_probe_runs", "Probe executions by job", ["job_id"], registry=self.registry,
        )
        self.probe_observations = Counter(
            "nwpd_probe_observations", "Observations produced by job and outcome",
            ["job_id", "outcome"], registry=self.registry,
        )
        self.probe_latency = Histogram(
            "nwpd_probe_latency_seconds", "Latency of successful probes",
            ["job_id"], buckets=LATENCY_BUCKETS, registry=self.registry,
        )
        self.store_size = Gauge(
            "nwpd_store_observations", "Observations currently held in the store", registry=self.registry,
        )
        self.store_shed = Counter(
            "nwpd_store_shed_observations", "Observations dropped by overload shedding",
            registry=self.registry,
        )
        self.store_write_failures = Counter(
            "nwpd_store_write_failures", "Observations that could not be persisted",
            registry=self.registry,
        )
        self.known_peers = Gauge(
            "nwpd_known_peers", "Live peers in the discovery registry", registry=self.registry,
        )

    def record_run(self, job_id: str, observations: list[Observation]) -> None:
        self.probe_runs.labels(job_id=job_id).inc()
        for obs in observations:
            self.probe_observations.labels(job_id=job_id, outcome=obs.outcome.value).inc()
            if obs.ok:
                self.probe_latency.labels(job_id=job_id).observe(obs.latency)

    def exposition(self) -> bytes:
        return generate_latest(self.registry)

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose the registry on its own port (daemon thread)."""
        start_http_server(port, addr=addr, registry=self.registry)
