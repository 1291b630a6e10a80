from nwpd.jobs.config import (
    AgentConfig,
    ClusterConfig,
    DiscoveryCheck,
    Job,
    NetworkConfig,
    NodeInfo,
    PingCheck,
    PodEndpoint,
    TCPCheck,
    dump_agent_config,
    load_agent_config,
    parse_agent_config,
)

__all__ = [
    "AgentConfig",
    "ClusterConfig",
    "DiscoveryCheck",
    "Job",
    "NetworkConfig",
    "NodeInfo",
    "PingCheck",
    "PodEndpoint",
    "TCPCheck",
    "dump_agent_config",
    "load_agent_config",
    "parse_agent_config",
]
