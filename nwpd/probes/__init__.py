"""Probe executors, selected per job at config load."""

from __future__ import annotations

from collections.abc import Callable

from nwpd.errors import ConfigurationError
from nwpd.jobs.config import AgentConfig, DiscoveryCheck, Job, PingCheck, TCPCheck
from nwpd.probes.base import Probe, ProbeContext
from nwpd.probes.discovery import DiscoveryListener, DiscoveryProbe
from nwpd.probes.ping import PingProbe, check_raw_socket_capability
from nwpd.probes.tcp import TCPProbe


def _build_tcp(job: Job, cfg: AgentConfig, ctx: ProbeContext) -> Probe:
    return TCPProbe(job, ctx)


def _build_ping(job: Job, cfg: AgentConfig, ctx: ProbeContext) -> Probe:
    if not cfg.ping_enabled:
        raise ConfigurationError(f"job {job.id!r} uses ping but ping_enabled is false")
    check_raw_socket_capability()
    return PingProbe(job, ctx)


def _build_discovery(job: Job, cfg: AgentConfig, ctx: ProbeContext) -> Probe:
    return DiscoveryProbe(job, ctx, cfg.discovery_group, cfg.discovery_port)


PROBE_BUILDERS: dict[type, Callable[[Job, AgentConfig, ProbeContext], Probe]] = {
    TCPCheck: _build_tcp,
    PingCheck: _build_ping,
    DiscoveryCheck: _build_discovery,
}


def build_probe(job: Job, cfg: AgentConfig, ctx: ProbeContext) -> Probe:
    """Dispatch a job to its probe implementation."""
    builder = PROBE_BUILDERS.get(type(job.probe))
    if builder is None:
        raise ConfigurationError(f"job {job.id!r}: unsupported probe {type(job.probe).__name__}")
    return builder(job, cfg, ctx)


__all__ = [
    "DiscoveryListener",
    "Probe",
    "ProbeContext",
    "build_probe",
]
