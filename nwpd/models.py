"""Core value types shared by probes, the store and the query service."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from nwpd.errors import ConfigurationError


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


# Job id used for observations the store writes about itself.
STORE_JOB_ID = "_store"
SHED_DETAIL = "observations dropped"


@dataclass(frozen=True)
class Endpoint:
    """A probe destination. Identity is (ip, port); hostname is a label."""

    hostname: str
    ip: str
    port: int = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Endpoint):
            return NotImplemented
        return self.ip == other.ip and self.port == other.port

    def __hash__(self) -> int:
        return hash((self.ip, self.port))

    def __str__(self) -> str:
        return f"{self.hostname}:{self.ip}:{self.port}"

    @property
    def address(self) -> str:
        return f"{self.ip}:{self.port}"

    @classmethod
    def parse(cls, text: str) -> "Endpoint":
        """Parse ``hostname:ip:port`` (or ``ip:port``)."""
        parts = text.strip().split(":")
        if len(parts) == 2:
            hostname, ip, port = parts[0], parts[0], parts[1]
        elif len(parts) == 3:
            hostname, ip, port = parts
        else:
            raise ConfigurationError(f"invalid endpoint {text!r}, expected hostname:ip:port")
        try:
            port_num = int(port)
        except ValueError:
            raise ConfigurationError(f"invalid port in endpoint {text!r}") from None
        if not ip or not 0 < port_num < 65536:
            raise ConfigurationError(f"invalid endpoint {text!r}")
        return cls(hostname=hostname or ip, ip=ip, port=port_num)

    def to_dict(self) -> dict[str, Any]:
        return {"hostname": self.hostname, "ip": self.ip, "port": self.port}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Endpoint":
        return cls(
            hostname=str(raw.get("hostname") or raw.get("ip", "")),
            ip=str(raw["ip"]),
            port=int(raw.get("port", 0)),
        )


@dataclass(frozen=True)
class Observation:
    """Result of one probe against one destination.

    ``latency`` is in seconds and only meaningful for successes; ``detail``
    is only set for failures and timeouts. ``count`` is carried by the
    synthetic shed-marker and peer-count observations.
    """

    job_id: str
    source: str
    destination: Endpoint
    outcome: Outcome
    timestamp: float = field(default_factory=time.time)
    latency: float = 0.0
    detail: str = ""
    count: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def is_shed_marker(self) -> bool:
        return self.job_id == STORE_JOB_ID and self.detail == SHED_DETAIL

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "timestamp": round(self.timestamp, 6),
            "job_id": self.job_id,
            "source": self.source,
            "destination": self.destination.to_dict(),
            "outcome": self.outcome.value,
            "latency": self.latency,
            "detail": self.detail,
        }
        if self.count is not None:
            d["count"] = self.count
        return d

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Observation":
        return cls(
            timestamp=float(raw["timestamp"]),
            job_id=raw["job_id"],
            source=raw.get("source", ""),
            destination=Endpoint.from_dict(raw["destination"]),
            outcome=Outcome(raw["outcome"]),
            latency=float(raw.get("latency") or 0.0),
            detail=raw.get("detail") or "",
            count=raw.get("count"),
        )


def success(
    job_id: str, source: str, destination: Endpoint, latency: float, timestamp: float | None = None,
) -> Observation:
    return Observation(
        job_id=job_id, source=source, destination=destination,
        outcome=Outcome.SUCCESS, latency=latency,
        timestamp=time.time() if timestamp is None else timestamp,
    )


def failure(
    job_id: str, source: str, destination: Endpoint, detail: str, timestamp: float | None = None,
) -> Observation:
    return Observation(
        job_id=job_id, source=source, destination=destination,
        outcome=Outcome.FAILURE, detail=detail,
        timestamp=time.time() if timestamp is None else timestamp,
    )


def timeout(
    job_id: str, source: str, destination: Endpoint, detail: str = "timeout",
    timestamp: float | None = None,
) -> Observation:
    return Observation(
        job_id=job_id, source=source, destination=destination,
        outcome=Outcome.TIMEOUT, detail=detail,
        timestamp=time.time() if timestamp is None else timestamp,
    )


# ── Streaming ────────────────────────────────────────────────────────────────

EVENT_OBSERVATION = "observation"
EVENT_SKIPPED = "skipped"
EVENT_END = "end"


@dataclass(frozen=True)
class StreamEvent:
    """One item of a live observation stream.

    ``skipped`` events carry the number of observations this reader lost
    because it fell behind; ``end`` means the agent is shutting down.
    """

    kind: str
    observation: Observation | None = None
    count: int = 0
