"""Shared test fixtures."""

from __future__ import annotations

import asyncio

import pytest

from nwpd.config import AgentSettings
from nwpd.jobs.config import AgentConfig, NetworkConfig
from nwpd.models import Endpoint, Observation, Outcome

T0 = 1_700_000_000.0

TARGET = Endpoint(hostname="api", ip="10.0.0.5", port=6443)
OWN = Endpoint(hostname="pod-a", ip="100.96.0.10", port=8880)


class FakeClock:
    """Manually advanced clock; ``sleep`` jumps forward instead of waiting."""

    def __init__(self, start: float = T0) -> None:
        self.wall = start
        self.mono = 0.0
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.wall

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.wall += seconds
        self.mono += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)


def make_obs(
    timestamp: float,
    job_id: str = "tcp-p2api",
    outcome: Outcome = Outcome.SUCCESS,
    destination: Endpoint = TARGET,
    detail: str = "",
) -> Observation:
    return Observation(
        job_id=job_id,
        source="pod-a",
        destination=destination,
        outcome=outcome,
        timestamp=timestamp,
        latency=0.002 if outcome == Outcome.SUCCESS else 0.0,
        detail=detail,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def agent_settings() -> AgentSettings:
    return AgentSettings(
        node_name="node-a", node_ip="10.250.0.10", pod_name="pod-a", pod_ip="100.96.0.10",
        shutdown_grace=1.0,
    )


@pytest.fixture
def agent_config() -> AgentConfig:
    """Pod-network config without jobs or discovery; nothing touches the network."""
    return AgentConfig(
        output_dir="",
        retention_hours=1,
        drop_factor=0.5,
        store_capacity=1000,
        pod_network=NetworkConfig(
            data_file_prefix="nwpd-pod", rpc_port=8880, metrics_port=8881, jobs=(),
        ),
        keepalive_interval=0.05,
        stream_backlog_seconds=60.0,
    )
