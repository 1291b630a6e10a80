"""Default job sets for the host-network and pod-network agents."""

from __future__ import annotations

from nwpd.jobs.config import (
    AgentConfig,
    ClusterConfig,
    DiscoveryCheck,
    Job,
    NetworkConfig,
    PingCheck,
    TCPCheck,
)
from nwpd.models import Endpoint

APPLICATION_NAME = "network-problem-detector"
NAME_AGENT_NODE_NET = APPLICATION_NAME + "-host"
NAME_AGENT_POD_NET = APPLICATION_NAME + "-pod"

PATH_OUTPUT_DIR = "/var/lib/gardener/" + APPLICATION_NAME

POD_NET_RPC_PORT = 8880
POD_NET_METRICS_PORT = 8881
NODE_NET_RPC_PORT = 1011
NODE_NET_METRICS_PORT = 1012

KUBE_PROXY_METRICS_PORT = 10249
DISCOVERY_PERIOD = 60.0
KUBERNETES_SERVICE = Endpoint(hostname="kubernetes", ip="100.64.0.1", port=443)


def build_default_config(
    cluster: ClusterConfig | None = None,
    api_server: Endpoint | None = None,
    default_period: float = 10.0,
    ping_enabled: bool = False,
) -> AgentConfig:
    """Build the standard agent config for a cluster.

    ``api_server`` is the externally resolved control-plane endpoint; when
    given, both namespaces also probe it from outside the cluster network.
    """
    node_jobs = [
        Job("tcp-n2kubeproxy", TCPCheck(node_port=KUBE_PROXY_METRICS_PORT), default_period),
        Job("discovery-n2n", DiscoveryCheck(), DISCOVERY_PERIOD),
        Job("tcp-n2p", TCPCheck(pod_endpoints=True), default_period),
    ]
    pod_jobs = [
        Job("tcp-p2api-int", TCPCheck(endpoints=(KUBERNETES_SERVICE,)), default_period),
        Job("tcp-p2kubeproxy", TCPCheck(node_port=KUBE_PROXY_METRICS_PORT), default_period),
        Job("tcp-p2p", TCPCheck(pod_endpoints=True), default_period),
    ]

    if api_server is not None:
        node_jobs.append(Job("tcp-n2api-ext", TCPCheck(endpoints=(api_server,)), default_period))
        pod_jobs.append(Job("tcp-p2api-ext", TCPCheck(endpoints=(api_server,)), default_period))

    if ping_enabled:
        node_jobs.append(Job("ping-n2n", PingCheck(), default_period))
        pod_jobs.append(Job("ping-p2n", PingCheck(), default_period))
        if api_server is not None:
            api_host = Endpoint(hostname=api_server.hostname, ip=api_server.ip, port=0)
            node_jobs.append(Job("ping-n2api-ext", PingCheck(hosts=(api_host,)), default_period))
            pod_jobs.append(Job("ping-p2api-ext", PingCheck(hosts=(api_host,)), default_period))

    return AgentConfig(
        output_dir=PATH_OUTPUT_DIR,
        retention_hours=4,
        drop_factor=0.9,
        ping_enabled=ping_enabled,
        node_network=NetworkConfig(
            data_file_prefix=NAME_AGENT_NODE_NET,
            rpc_port=NODE_NET_RPC_PORT,
            metrics_port=NODE_NET_METRICS_PORT,
            start_discovery_server=True,
            default_period=default_period,
            jobs=tuple(node_jobs),
        ),
        pod_network=NetworkConfig(
            data_file_prefix=NAME_AGENT_POD_NET,
            rpc_port=POD_NET_RPC_PORT,
            metrics_port=POD_NET_METRICS_PORT,
            default_period=default_period,
            jobs=tuple(pod_jobs),
        ),
        cluster=cluster or ClusterConfig(),
    )
