"""Entry point for the network-problem-detector agent — `nwpd` console script."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel

from nwpd.agent.runtime import Agent
from nwpd.api.server import create_app
from nwpd.config import settings
from nwpd.errors import ConfigurationError, StoreError
from nwpd.jobs.config import dump_agent_config, load_agent_config, parse_duration
from nwpd.jobs.defaults import build_default_config
from nwpd.models import Endpoint

console = Console(stderr=True)
logger = logging.getLogger("nwpd")

EXIT_STORE_FAILURE = 1
EXIT_CONFIG_ERROR = 2


class AgentServer(uvicorn.Server):
    """uvicorn server that ends agent streams as soon as a signal arrives.

    Live SSE responses would otherwise keep uvicorn's graceful shutdown
    waiting for their connections to close.
    """

    def __init__(self, config: uvicorn.Config, agent: Agent) -> None:
        super().__init__(config)
        self.agent = agent

    def handle_exit(self, sig: int, frame) -> None:
        self.agent.request_shutdown_threadsafe()
        super().handle_exit(sig, frame)


def run_agent(config_path: str, host_network: bool) -> None:
    """Load the config, build the agent and serve its query service until signalled."""
    cfg = load_agent_config(config_path)
    agent = Agent(cfg, host_network, settings)

    console.print(
        Panel.fit(
            f"[bold]network-problem-detector agent[/bold]\n"
            f"Identity:  {agent.identity}\n"
            f"Network:   {agent.namespace}\n"
            f"Query API: {settings.bind_host}:{agent.network.rpc_port}\n"
            f"Metrics:   {settings.bind_host}:{agent.network.metrics_port}\n"
            f"Jobs:      {', '.join(j.id for j in agent.network.jobs) or 'none'}\n"
            f"Store:     {cfg.output_dir or 'memory only'}",
            title="nwpd",
            border_style="green",
        )
    )

    server = AgentServer(
        uvicorn.Config(
            create_app(agent),
            host=settings.bind_host,
            port=agent.network.rpc_port,
            log_level=settings.log_level.lower(),
        ),
        agent,
    )
    server.run()


def print_default_config(api_server: str | None, enable_ping: bool, period: str) -> None:
    cfg = build_default_config(
        api_server=Endpoint.parse(api_server) if api_server else None,
        default_period=parse_duration(period, "period"),
        ping_enabled=enable_ping,
    )
    sys.stdout.write(dump_agent_config(cfg))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Network problem detector agent")
    sub = parser.add_subparsers(dest="command")

    run_parser = sub.add_parser("run-agent", help="Run the agent and its query service")
    run_parser.add_argument("--config", default=settings.config_path, help="Path to agent-config.yaml")
    run_parser.add_argument(
        "--host-network", action="store_true", help="Run as the host-network agent (node_network config)",
    )

    defaults_parser = sub.add_parser("default-config", help="Print the default agent config as YAML")
    defaults_parser.add_argument("--enable-ping", action="store_true", help="Add ping jobs")
    defaults_parser.add_argument(
        "--api-server", default=None, help="External API server endpoint as hostname:ip:port",
    )
    defaults_parser.add_argument("--period", default="10s", help="Default job period")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    try:
        if args.command == "run-agent":
            run_agent(args.config, args.host_network)
        elif args.command == "default-config":
            print_default_config(args.api_server, args.enable_ping, args.period)
        else:
            parser.print_help()
            sys.exit(1)
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    except StoreError as e:
        logger.error("Cannot open observation store: %s", e)
        console.print(f"[red]Store error:[/red] {e}")
        sys.exit(EXIT_STORE_FAILURE)


if __name__ == "__main__":
    main()
