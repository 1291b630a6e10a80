"""Background health poller for one agent.

Failed polls back off exponentially (10s, 20s, 40s ... capped at 300s)
and the first successful poll returns to the base interval. Besides
reachability the poller tells apart an agent that restarted (uptime went
backwards) from one that is stuck (online, but its store no longer grows).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from nwpd.aggregator.client import AgentClient, AgentOfflineError
from nwpd.api.models import HealthResponse
from nwpd.errors import NwpdError

logger = logging.getLogger(__name__)

BASE_INTERVAL = 10.0
MAX_INTERVAL = 300.0
BACKOFF_FACTOR = 2.0

# Successful polls with an unchanged store size before an agent counts as stuck
STUCK_AFTER = 3


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AgentState:
    """What the aggregator currently knows about one agent."""

    online: bool = False
    identity: str | None = None
    namespace: str | None = None
    uptime_seconds: float | None = None
    store_size: int | None = None
    last_seen: str | None = None
    last_check: str | None = None
    last_transition: str | None = None
    error: str | None = None
    restarts: int = 0
    unchanged_polls: int = 0
    consecutive_failures: int = 0
    reconnect_attempts: int = 0
    current_interval: float = BASE_INTERVAL

    @property
    def stuck(self) -> bool:
        return self.online and self.unchanged_polls >= STUCK_AFTER

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["stuck"] = self.stuck
        d["current_interval"] = round(self.current_interval, 1)
        return d


class AgentHealthPoller:
    def __init__(
        self,
        client: AgentClient,
        interval: float = BASE_INTERVAL,
        max_interval: float = MAX_INTERVAL,
    ) -> None:
        self.client = client
        self.base_interval = interval
        self.max_interval = max_interval
        self.state = AgentState(current_interval=interval)
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="agent-health-poller")
        logger.info("Health poller started (interval=%ss, max=%ss)", self.base_interval, self.max_interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Health poller stopped")

    async def _run(self) -> None:
        while True:
            await self.check_once()
            await asyncio.sleep(self.state.current_interval)

    async def check_once(self) -> AgentState:
        """Poll /health once and fold the result into ``state``."""
        now = _utcnow()
        self.state.last_check = now
        loop = asyncio.get_running_loop()
        try:
            health = await loop.run_in_executor(None, self.client.health)
        except (NwpdError, httpx.HTTPError) as e:
            self._record_failure(e, now)
        else:
            self._record_success(health, now)
        return self.state

    def _record_failure(self, exc: Exception, now: str) -> None:
        state = self.state
        state.error = "Agent unreachable" if isinstance(exc, AgentOfflineError) else str(exc)
        if state.online:
            state.last_transition = f"online→offline @ {now}"
            logger.warning("Agent %s went offline: %s", state.identity or "?", state.error)
        state.online = False
        state.consecutive_failures += 1
        state.reconnect_attempts += 1
        backoff = self.base_interval * BACKOFF_FACTOR ** (state.consecutive_failures - 1)
        state.current_interval = min(backoff, self.max_interval)
        logger.debug(
            "Health poll failed %d times in a row, retrying in %.0fs",
            state.consecutive_failures, state.current_interval,
        )

    def _record_success(self, health: HealthResponse, now: str) -> None:
        state = self.state
        if state.uptime_seconds is not None and health.uptime_seconds < state.uptime_seconds:
            state.restarts += 1
            state.unchanged_polls = 0
            logger.warning(
                "Agent %s restarted (uptime %.0fs -> %.0fs)",
                health.identity, state.uptime_seconds, health.uptime_seconds,
            )
        elif health.store_size == state.store_size:
            state.unchanged_polls += 1
            if state.unchanged_polls == STUCK_AFTER:
                logger.warning("Agent %s looks stuck: store size unchanged at %d", health.identity, health.store_size)
        else:
            state.unchanged_polls = 0

        if not state.online:
            state.last_transition = f"offline→online @ {now}"
            logger.info("Agent %s reachable after %d attempts", health.identity, state.reconnect_attempts)
            state.reconnect_attempts = 0

        state.online = True
        state.identity = health.identity
        state.namespace = health.namespace
        state.uptime_seconds = health.uptime_seconds
        state.store_size = health.store_size
        state.last_seen = now
        state.error = None
        state.consecutive_failures = 0
        state.current_interval = self.base_interval
