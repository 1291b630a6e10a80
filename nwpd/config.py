from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class AgentSettings(BaseSettings):
    """Process settings loaded from environment / .env file.

    The node and pod fields are injected into the agent pod by the
    daemonset via the downward API.
    """

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Identity (downward API)
    node_name: str = Field(default="", validation_alias=AliasChoices("NODE_NAME", "node_name"))
    node_ip: str = Field(default="127.0.0.1", validation_alias=AliasChoices("NODE_IP", "node_ip"))
    pod_name: str = Field(default="", validation_alias=AliasChoices("POD_NAME", "pod_name"))
    pod_ip: str = Field(default="127.0.0.1", validation_alias=AliasChoices("POD_IP", "pod_ip"))

    # Config file mounted from the agent config map
    config_path: str = Field(
        default="/config/agent-config.yaml",
        validation_alias=AliasChoices("NWPD_CONFIG", "config_path"),
    )

    # Query service bind address
    bind_host: str = Field(default="0.0.0.0", validation_alias=AliasChoices("NWPD_BIND_HOST", "bind_host"))

    # Seconds in-flight probes get to finish on shutdown
    shutdown_grace: float = Field(
        default=5.0, validation_alias=AliasChoices("NWPD_SHUTDOWN_GRACE", "shutdown_grace"),
    )

    # Logging
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("NWPD_LOG_LEVEL", "log_level"))

    def identity(self, host_network: bool) -> str:
        """Source identity stamped on every observation."""
        if host_network:
            return self.node_name or self.node_ip
        return self.pod_name or self.pod_ip

    def own_ip(self, host_network: bool) -> str:
        return self.node_ip if host_network else self.pod_ip


settings = AgentSettings()
