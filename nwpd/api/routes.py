"""Query service endpoints.

Endpoints:
  GET /observations          — historical range query
  GET /observations/stream   — SSE live tail with recent backlog
  GET /health                — uptime and store size
  GET /metrics               — Prometheus text exposition
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST

from nwpd.api.models import HealthResponse, QueryResponse
from nwpd.errors import ProtocolError, StoreError
from nwpd.models import EVENT_END, EVENT_OBSERVATION, EVENT_SKIPPED, StreamEvent
from nwpd.store.subscription import Subscription

logger = logging.getLogger(__name__)

router = APIRouter()


# ── SSE encoding ─────────────────────────────────────────────────────────────


def format_event(event: StreamEvent) -> str:
    if event.kind == EVENT_OBSERVATION and event.observation is not None:
        data: Any = event.observation.to_dict()
    elif event.kind == EVENT_SKIPPED:
        data = {"count": event.count}
    else:
        data = {}
    return f"event: {event.kind}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


async def observation_events(
    sub: Subscription,
    keepalive: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """SSE frames for one reader until the stream ends or the client leaves."""
    try:
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.debug("Stream reader %d disconnected", sub.id)
                break
            event = await sub.get(timeout=keepalive)
            if event is None:
                yield ": keepalive\n\n"
                continue
            yield format_event(event)
            if event.kind == EVENT_END:
                break
    finally:
        sub.close()


def _check_range(start: float | None, end: float | None) -> None:
    if start is not None and end is not None and start > end:
        raise ProtocolError(f"start ({start}) is after end ({end})")


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/observations", response_model=QueryResponse)
def list_observations(
    request: Request,
    start: float | None = None,
    end: float | None = None,
    job_id: str | None = None,
) -> dict[str, Any]:
    """Stored observations with ``start <= timestamp < end``, oldest first."""
    agent = request.app.state.agent
    try:
        _check_range(start, end)
        observations = [o.to_dict() for o in agent.store.query(start, end, job_id)]
    except ProtocolError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StoreError as e:
        logger.error("Query failed: %s", e)
        raise HTTPException(status_code=503, detail=f"query failed: {e}") from e
    return {"observations": observations}


@router.get("/observations/stream")
async def stream_observations(request: Request, backlog_seconds: float | None = None) -> StreamingResponse:
    """Server-Sent Events: recent backlog, then every new observation."""
    agent = request.app.state.agent
    if agent.shutting_down:
        raise HTTPException(status_code=503, detail="agent is shutting down")
    if backlog_seconds is None:
        backlog_seconds = agent.config.stream_backlog_seconds
    if backlog_seconds < 0:
        raise HTTPException(status_code=400, detail="backlog_seconds must be >= 0")

    sub = agent.store.subscribe(
        backlog_since=agent.clock.now() - backlog_seconds,
        maxsize=agent.config.stream_queue_size,
    )
    logger.info("Stream reader %d connected (%d backlog)", sub.id, len(sub))

    return StreamingResponse(
        observation_events(sub, agent.config.keepalive_interval, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> dict[str, Any]:
    return request.app.state.agent.health()


@router.get("/metrics")
def metrics(request: Request) -> Response:
    return Response(content=request.app.state.agent.metrics.exposition(), media_type=CONTENT_TYPE_LATEST)
