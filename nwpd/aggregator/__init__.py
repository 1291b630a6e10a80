"""Client-side contract of the query service, used by the central aggregator."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Iterator

from nwpd.aggregator.client import AgentClient, AgentError, AgentOfflineError, parse_sse
from nwpd.aggregator.poller import AgentHealthPoller, AgentState
from nwpd.models import Observation


def merge_observations(*streams: Iterable[Observation]) -> Iterator[Observation]:
    """Merge per-agent observation sequences (each timestamp-ordered) into one."""
    return heapq.merge(*streams, key=lambda o: o.timestamp)


__all__ = [
    "AgentClient",
    "AgentError",
    "AgentHealthPoller",
    "AgentOfflineError",
    "AgentState",
    "merge_observations",
    "parse_sse",
]
