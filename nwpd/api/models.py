"""Pydantic wire models for the query service."""

from __future__ import annotations

from pydantic import BaseModel

from nwpd.models import Endpoint, Observation, Outcome


class EndpointModel(BaseModel):
    hostname: str
    ip: str
    port: int = 0


class ObservationModel(BaseModel):
    timestamp: float
    job_id: str
    source: str
    destination: EndpointModel
    outcome: Outcome
    latency: float = 0.0
    detail: str = ""
    count: int | None = None

    def to_observation(self) -> Observation:
        return Observation(
            timestamp=self.timestamp,
            job_id=self.job_id,
            source=self.source,
            destination=Endpoint(**self.destination.model_dump()),
            outcome=self.outcome,
            latency=self.latency,
            detail=self.detail,
            count=self.count,
        )


class QueryResponse(BaseModel):
    observations: list[ObservationModel]


class HealthResponse(BaseModel):
    status: str
    uptime_seconds: float
    store_size: int
    identity: str
    namespace: str
