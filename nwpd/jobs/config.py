"""Agent configuration: loads agent-config.yaml into typed, immutable models.

Single source of truth for the job set of both network namespaces. The
scheduler, store, registry and query service all receive the same
AgentConfig value; nothing reads configuration from global state.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from nwpd.errors import ConfigurationError
from nwpd.models import Endpoint

logger = logging.getLogger(__name__)

AGENT_CONFIG_FILENAME = "agent-config.yaml"

# Probe execution may use at most this share of the job period.
EXECUTION_TIMEOUT_SHARE = 0.8


# ── Durations ────────────────────────────────────────────────────────────────

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any, name: str = "duration") -> float:
    """Parse seconds given as a number or a Go-style string ("1m30s", "500ms")."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid {name}: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"invalid {name}: {value!r}")

    text = value.strip()
    pos = 0
    total = 0.0
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(text) or pos == 0:
        try:
            return float(text)
        except ValueError:
            raise ConfigurationError(f"invalid {name}: {value!r}") from None
    return total


def format_duration(seconds: float) -> str:
    """Inverse of parse_duration for the values we write back to YAML."""
    if seconds > 0 and seconds == int(seconds):
        rest = int(seconds)
        out = ""
        for unit, size in (("h", 3600), ("m", 60)):
            if rest >= size:
                out += f"{rest // size}{unit}"
                rest %= size
        if rest or not out:
            out += f"{rest}s"
        return out
    ms = seconds * 1000
    if ms == int(ms):
        return f"{int(ms)}ms"
    return f"{seconds!r}s"


# ── Probe variants ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TCPCheck:
    """TCP connect check. Exactly one destination source is set."""

    endpoints: tuple[Endpoint, ...] = ()
    peers: bool = False  # all peers known to the registry + cluster pod endpoints
    node_port: int | None = None  # fixed port on every known node
    pod_endpoints: bool = False  # agents of the pod-network daemonset

    type = "tcp"


@dataclass(frozen=True)
class PingCheck:
    """ICMP echo check. Empty ``hosts`` means every known node."""

    hosts: tuple[Endpoint, ...] = ()

    type = "ping"


@dataclass(frozen=True)
class DiscoveryCheck:
    """Peer announce. The listening half runs as a separate long-lived task."""

    emit_peer_count: bool = False

    type = "discovery"


ProbeSpec = Union[TCPCheck, PingCheck, DiscoveryCheck]


# ── Data models ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Job:
    """A configured, periodically executed network check."""

    id: str
    probe: ProbeSpec
    period: float
    timeout: float | None = None

    @property
    def execution_timeout(self) -> float:
        """Bound for a single execution; always shorter than the period."""
        bound = self.period * EXECUTION_TIMEOUT_SHARE
        if self.timeout is not None:
            return min(self.timeout, bound)
        return bound


@dataclass(frozen=True)
class NetworkConfig:
    """Settings of one network namespace (host network or pod network)."""

    data_file_prefix: str
    rpc_port: int
    metrics_port: int
    start_discovery_server: bool = False
    default_period: float = 10.0
    jobs: tuple[Job, ...] = ()

    def job(self, job_id: str) -> Job | None:
        return next((j for j in self.jobs if j.id == job_id), None)

    @property
    def discovery_jobs(self) -> tuple[Job, ...]:
        return tuple(j for j in self.jobs if isinstance(j.probe, DiscoveryCheck))

    @property
    def discovery_period(self) -> float:
        jobs = self.discovery_jobs
        return min(j.period for j in jobs) if jobs else self.default_period

    @property
    def runs_discovery_listener(self) -> bool:
        return self.start_discovery_server or bool(self.discovery_jobs)


@dataclass(frozen=True)
class NodeInfo:
    hostname: str
    ip: str


@dataclass(frozen=True)
class PodEndpoint:
    node_name: str
    pod_name: str
    ip: str
    port: int


@dataclass(frozen=True)
class ClusterConfig:
    """Cluster identity metadata resolved by the external controller."""

    nodes: tuple[NodeInfo, ...] = ()
    pod_endpoints: tuple[PodEndpoint, ...] = ()


@dataclass(frozen=True)
class AgentConfig:
    """Process-wide agent configuration. Immutable after load."""

    output_dir: str = ""
    retention_hours: float = 4.0
    drop_factor: float = 0.9
    node_network: NetworkConfig | None = None
    pod_network: NetworkConfig | None = None
    cluster: ClusterConfig = field(default_factory=ClusterConfig)

    # Observation store
    store_capacity: int = 100_000
    retention_sweep_interval: float = 60.0
    shed_check_interval: float = 10.0
    shed_window: float = 60.0

    # Probes
    ping_enabled: bool = False
    fanout: int = 8

    # Discovery
    discovery_group: str = "239.255.77.77"
    discovery_port: int = 37373
    discovery_ttl_multiple: float = 3.0

    # Query service streaming
    stream_queue_size: int = 1000
    stream_backlog_seconds: float = 60.0
    keepalive_interval: float = 15.0

    @property
    def retention_seconds(self) -> float:
        return self.retention_hours * 3600.0

    def network(self, host_network: bool) -> NetworkConfig:
        net = self.node_network if host_network else self.pod_network
        if net is None:
            which = "node_network" if host_network else "pod_network"
            raise ConfigurationError(f"missing {which} section in agent config")
        return net


# ── Loading ──────────────────────────────────────────────────────────────────


def load_agent_config(path: Path | str) -> AgentConfig:
    """Read and validate an agent config YAML file."""
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"cannot read agent config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse agent config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"agent config {path} must be a mapping")

    cfg = parse_agent_config(raw)
    logger.info(
        "Loaded agent config from %s: node_network=%d jobs, pod_network=%d jobs",
        path,
        len(cfg.node_network.jobs) if cfg.node_network else 0,
        len(cfg.pod_network.jobs) if cfg.pod_network else 0,
    )
    return cfg


def dump_agent_config(cfg: AgentConfig) -> str:
    return yaml.dump(
        agent_config_to_dict(cfg), allow_unicode=True, sort_keys=False, default_flow_style=False,
    )


def save_agent_config(cfg: AgentConfig, path: Path | str) -> None:
    Path(path).write_text(dump_agent_config(cfg), encoding="utf-8")


# ── Parsers ──────────────────────────────────────────────────────────────────


def parse_agent_config(raw: dict[str, Any]) -> AgentConfig:
    defaults = AgentConfig()

    retention_hours = _number(raw.get("retention_hours", defaults.retention_hours), "retention_hours")
    if retention_hours <= 0:
        raise ConfigurationError(f"retention_hours must be > 0, got {retention_hours}")

    drop_factor = _number(raw.get("drop_factor", defaults.drop_factor), "drop_factor")
    if not 0 <= drop_factor < 1:
        raise ConfigurationError(f"drop_factor must be in [0, 1), got {drop_factor}")

    capacity = int(_number(raw.get("store_capacity", defaults.store_capacity), "store_capacity"))
    if capacity <= 0:
        raise ConfigurationError(f"store_capacity must be > 0, got {capacity}")

    ping_enabled = bool(raw.get("ping_enabled", False))

    cfg = AgentConfig(
        output_dir=str(raw.get("output_dir") or ""),
        retention_hours=retention_hours,
        drop_factor=drop_factor,
        node_network=_parse_network(raw.get("node_network"), "node_network", ping_enabled),
        pod_network=_parse_network(raw.get("pod_network"), "pod_network", ping_enabled),
        cluster=_parse_cluster(raw.get("cluster") or {}),
        store_capacity=capacity,
        retention_sweep_interval=_positive_duration(
            raw.get("retention_sweep_interval", defaults.retention_sweep_interval),
            "retention_sweep_interval",
        ),
        shed_check_interval=_positive_duration(
            raw.get("shed_check_interval", defaults.shed_check_interval), "shed_check_interval",
        ),
        shed_window=_positive_duration(raw.get("shed_window", defaults.shed_window), "shed_window"),
        ping_enabled=ping_enabled,
        fanout=max(1, int(_number(raw.get("fanout", defaults.fanout), "fanout"))),
        discovery_group=str(raw.get("discovery_group", defaults.discovery_group)),
        discovery_port=_port(raw.get("discovery_port", defaults.discovery_port), "discovery_port"),
        discovery_ttl_multiple=_number(
            raw.get("discovery_ttl_multiple", defaults.discovery_ttl_multiple), "discovery_ttl_multiple",
        ),
        stream_queue_size=max(1, int(_number(
            raw.get("stream_queue_size", defaults.stream_queue_size), "stream_queue_size",
        ))),
        stream_backlog_seconds=parse_duration(
            raw.get("stream_backlog_seconds", defaults.stream_backlog_seconds), "stream_backlog_seconds",
        ),
        keepalive_interval=_positive_duration(
            raw.get("keepalive_interval", defaults.keepalive_interval), "keepalive_interval",
        ),
    )
    if cfg.discovery_ttl_multiple < 1:
        raise ConfigurationError("discovery_ttl_multiple must be >= 1")
    return cfg


def _parse_network(raw: Any, name: str, ping_enabled: bool) -> NetworkConfig | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{name} must be a mapping")

    default_period = _positive_duration(raw.get("default_period", 10.0), f"{name}.default_period")

    jobs: list[Job] = []
    seen: set[str] = set()
    for entry in raw.get("jobs") or []:
        job = _parse_job(entry, default_period, name)
        if job.id in seen:
            raise ConfigurationError(f"duplicate job id {job.id!r} in {name}")
        if isinstance(job.probe, PingCheck) and not ping_enabled:
            raise ConfigurationError(
                f"job {job.id!r} in {name} uses ping but ping_enabled is false"
            )
        seen.add(job.id)
        jobs.append(job)

    return NetworkConfig(
        data_file_prefix=str(raw.get("data_file_prefix") or name),
        rpc_port=_port(raw.get("rpc_port"), f"{name}.rpc_port"),
        metrics_port=_port(raw.get("metrics_port"), f"{name}.metrics_port"),
        start_discovery_server=bool(raw.get("start_discovery_server", False)),
        default_period=default_period,
        jobs=tuple(jobs),
    )


def _parse_job(raw: Any, default_period: float, network: str) -> Job:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"job entries in {network} must be mappings")
    job_id = str(raw.get("id") or "").strip()
    if not job_id:
        raise ConfigurationError(f"job without id in {network}")

    where = f"job {job_id!r}"
    period = parse_duration(raw["period"], f"{where} period") if "period" in raw else default_period
    if period <= 0:
        raise ConfigurationError(f"{where}: period must be > 0, got {period}")

    job_timeout = None
    if raw.get("timeout") is not None:
        job_timeout = _positive_duration(raw["timeout"], f"{where} timeout")

    kind = raw.get("type")
    if kind == "tcp":
        probe: ProbeSpec = _parse_tcp(raw, where)
    elif kind == "ping":
        probe = PingCheck(hosts=tuple(_parse_endpoint(h, where, default_port=0) for h in raw.get("hosts") or []))
    elif kind == "discovery":
        probe = DiscoveryCheck(emit_peer_count=bool(raw.get("emit_peer_count", False)))
    else:
        raise ConfigurationError(f"{where}: unknown probe type {kind!r}")

    return Job(id=job_id, probe=probe, period=period, timeout=job_timeout)


def _parse_tcp(raw: dict[str, Any], where: str) -> TCPCheck:
    endpoints = tuple(_parse_endpoint(e, where) for e in raw.get("endpoints") or [])
    node_port = raw.get("node_port")
    check = TCPCheck(
        endpoints=endpoints,
        peers=bool(raw.get("peers", False)),
        node_port=_port(node_port, f"{where} node_port") if node_port is not None else None,
        pod_endpoints=bool(raw.get("pod_endpoints", False)),
    )
    sources = sum((bool(check.endpoints), check.peers, check.node_port is not None, check.pod_endpoints))
    if sources != 1:
        raise ConfigurationError(
            f"{where}: tcp check needs exactly one of endpoints, peers, node_port, pod_endpoints"
        )
    return check


def _parse_endpoint(raw: Any, where: str, default_port: int | None = None) -> Endpoint:
    if isinstance(raw, dict):
        ip = str(raw.get("ip") or "")
        if not ip:
            raise ConfigurationError(f"{where}: endpoint without ip: {raw!r}")
        if "port" in raw:
            port = _port(raw["port"], f"{where} endpoint {ip} port")
        elif default_port is not None:
            port = default_port
        else:
            raise ConfigurationError(f"{where}: endpoint without port: {raw!r}")
        return Endpoint(hostname=str(raw.get("hostname") or ip), ip=ip, port=port)
    if isinstance(raw, str):
        if default_port is not None and raw.count(":") <= 1:
            # hostname:ip or bare ip for ping hosts
            hostname, _, ip = raw.rpartition(":")
            return Endpoint(hostname=hostname or ip, ip=ip, port=default_port)
        return Endpoint.parse(raw)
    raise ConfigurationError(f"{where}: invalid endpoint {raw!r}")


def _parse_cluster(raw: dict[str, Any]) -> ClusterConfig:
    try:
        return _parse_cluster_entries(raw)
    except (KeyError, TypeError, AttributeError) as e:
        raise ConfigurationError(f"invalid cluster section: {e!r}") from e


def _parse_cluster_entries(raw: dict[str, Any]) -> ClusterConfig:
    nodes = tuple(
        NodeInfo(hostname=str(n.get("hostname") or n["ip"]), ip=str(n["ip"]))
        for n in raw.get("nodes") or []
    )
    pods = tuple(
        PodEndpoint(
            node_name=str(p.get("node_name", "")),
            pod_name=str(p.get("pod_name", "")),
            ip=str(p["ip"]),
            port=_port(p.get("port"), "pod endpoint port"),
        )
        for p in raw.get("pod_endpoints") or []
    )
    return ClusterConfig(nodes=nodes, pod_endpoints=pods)


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def _positive_duration(value: Any, name: str) -> float:
    seconds = parse_duration(value, name)
    if seconds <= 0:
        raise ConfigurationError(f"{name} must be > 0, got {value!r}")
    return seconds


def _port(value: Any, name: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a port number, got {value!r}") from None
    if not 0 < port < 65536:
        raise ConfigurationError(f"{name} out of range: {port}")
    return port


# ── Serializers ──────────────────────────────────────────────────────────────


def agent_config_to_dict(cfg: AgentConfig) -> dict[str, Any]:
    d: dict[str, Any] = {
        "output_dir": cfg.output_dir,
        "retention_hours": cfg.retention_hours,
        "drop_factor": cfg.drop_factor,
        "store_capacity": cfg.store_capacity,
        "retention_sweep_interval": format_duration(cfg.retention_sweep_interval),
        "shed_check_interval": format_duration(cfg.shed_check_interval),
        "shed_window": format_duration(cfg.shed_window),
        "ping_enabled": cfg.ping_enabled,
        "fanout": cfg.fanout,
        "discovery_group": cfg.discovery_group,
        "discovery_port": cfg.discovery_port,
        "discovery_ttl_multiple": cfg.discovery_ttl_multiple,
        "stream_queue_size": cfg.stream_queue_size,
        "stream_backlog_seconds": format_duration(cfg.stream_backlog_seconds),
        "keepalive_interval": format_duration(cfg.keepalive_interval),
    }
    if cfg.node_network is not None:
        d["node_network"] = _network_to_dict(cfg.node_network)
    if cfg.pod_network is not None:
        d["pod_network"] = _network_to_dict(cfg.pod_network)
    d["cluster"] = {
        "nodes": [{"hostname": n.hostname, "ip": n.ip} for n in cfg.cluster.nodes],
        "pod_endpoints": [
            {"node_name": p.node_name, "pod_name": p.pod_name, "ip": p.ip, "port": p.port}
            for p in cfg.cluster.pod_endpoints
        ],
    }
    return d


def _network_to_dict(net: NetworkConfig) -> dict[str, Any]:
    return {
        "data_file_prefix": net.data_file_prefix,
        "rpc_port": net.rpc_port,
        "metrics_port": net.metrics_port,
        "start_discovery_server": net.start_discovery_server,
        "default_period": format_duration(net.default_period),
        "jobs": [_job_to_dict(j) for j in net.jobs],
    }


def _job_to_dict(job: Job) -> dict[str, Any]:
    d: dict[str, Any] = {"id": job.id, "type": job.probe.type, "period": format_duration(job.period)}
    if job.timeout is not None:
        d["timeout"] = format_duration(job.timeout)

    probe = job.probe
    if isinstance(probe, TCPCheck):
        if probe.endpoints:
            d["endpoints"] = [str(e) for e in probe.endpoints]
        if probe.peers:
            d["peers"] = True
        if probe.node_port is not None:
            d["node_port"] = probe.node_port
        if probe.pod_endpoints:
            d["pod_endpoints"] = True
    elif isinstance(probe, PingCheck):
        if probe.hosts:
            d["hosts"] = [f"{h.hostname}:{h.ip}" for h in probe.hosts]
    elif isinstance(probe, DiscoveryCheck):
        if probe.emit_peer_count:
            d["emit_peer_count"] = True
    return d
