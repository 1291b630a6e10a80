"""httpx-based client for an agent's query service.

All methods return typed responses or raise AgentOfflineError / AgentError.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

import httpx

from nwpd.api.models import HealthResponse, QueryResponse
from nwpd.errors import NwpdError, ProtocolError
from nwpd.models import EVENT_END, EVENT_OBSERVATION, EVENT_SKIPPED, Observation, StreamEvent

logger = logging.getLogger(__name__)


class AgentOfflineError(NwpdError):
    """Raised when the agent is unreachable."""


class AgentError(NwpdError):
    """Raised when the agent answers with an error status."""

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Agent error {status_code}: {detail}")


class AgentClient:
    """Synchronous client for one agent."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self, timeout: float | httpx.Timeout | None = None) -> httpx.Client:
        return httpx.Client(
            base_url=self._base_url,
            timeout=self._timeout if timeout is None else timeout,
            transport=self._transport,
        )

    def _get(self, path: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> httpx.Response:
        try:
            with self._client(timeout) as client:
                resp = client.get(path, params=params)
        except httpx.ConnectError as e:
            raise AgentOfflineError(f"Agent {self._base_url} is unreachable") from e
        except httpx.TimeoutException as e:
            raise AgentOfflineError(f"Agent {self._base_url} timed out") from e
        except httpx.TransportError as e:
            raise AgentOfflineError(f"Agent {self._base_url} dropped the connection: {e}") from e
        _raise_for_status(resp)
        return resp

    # ── High-level methods ───────────────────────────────────────────────

    def health(self) -> HealthResponse:
        """GET /health"""
        resp = self._get("/health", timeout=5.0)
        try:
            return HealthResponse(**resp.json())
        except (ValueError, TypeError) as e:
            raise ProtocolError(f"malformed health response: {e}") from e

    def query(
        self,
        start: float | None = None,
        end: float | None = None,
        job_id: str | None = None,
    ) -> list[Observation]:
        """GET /observations"""
        params = {k: v for k, v in (("start", start), ("end", end), ("job_id", job_id)) if v is not None}
        resp = self._get("/observations", params=params)
        try:
            body = QueryResponse(**resp.json())
        except (ValueError, TypeError) as e:
            raise ProtocolError(f"malformed query response: {e}") from e
        return [m.to_observation() for m in body.observations]

    def stream(self, backlog_seconds: float | None = None) -> Iterator[StreamEvent]:
        """GET /observations/stream — yields events until the agent ends the stream."""
        params = {"backlog_seconds": backlog_seconds} if backlog_seconds is not None else None
        # No read timeout: the server sends keep-alives while idle
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            with self._client(timeout) as client:
                with client.stream("GET", "/observations/stream", params=params) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        _raise_for_status(resp)
                    for event in parse_sse(resp.iter_lines()):
                        yield event
                        if event.kind == EVENT_END:
                            return
        except httpx.ConnectError as e:
            raise AgentOfflineError(f"Agent {self._base_url} is unreachable") from e
        except httpx.TimeoutException as e:
            raise AgentOfflineError(f"Agent {self._base_url} timed out") from e
        except httpx.TransportError as e:
            raise AgentOfflineError(f"Agent {self._base_url} dropped the connection: {e}") from e


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    detail = resp.text
    try:
        detail = resp.json().get("detail", resp.text)
    except (ValueError, AttributeError):
        pass
    raise AgentError(resp.status_code, str(detail))


def parse_sse(lines: Iterator[str]) -> Iterator[StreamEvent]:
    """Decode SSE lines into stream events. Comments (keep-alives) are skipped."""
    kind = ""
    data: list[str] = []
    for line in lines:
        if not line:
            if kind or data:
                yield _decode_event(kind or "message", "\n".join(data))
            kind, data = "", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            kind = line[6:].strip()
        elif line.startswith("data:"):
            data.append(line[5:].lstrip())
    if kind or data:
        yield _decode_event(kind or "message", "\n".join(data))


def _decode_event(kind: str, data: str) -> StreamEvent:
    try:
        payload = json.loads(data) if data else {}
    except json.JSONDecodeError as e:
        raise ProtocolError(f"malformed {kind} event: {e}") from e
    if kind == EVENT_OBSERVATION:
        try:
            return StreamEvent(EVENT_OBSERVATION, observation=Observation.from_dict(payload))
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"malformed observation event: {e!r}") from e
    if kind == EVENT_SKIPPED:
        return StreamEvent(EVENT_SKIPPED, count=int(payload.get("count", 0)))
    if kind == EVENT_END:
        return StreamEvent(EVENT_END)
    raise ProtocolError(f"unknown stream event {kind!r}")
