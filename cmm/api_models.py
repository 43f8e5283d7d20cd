from __future__ import annotations

from pydantic import BaseModel, Field

from .runtime import WorkerRecord


class WorkerView(BaseModel):
    identity: str = Field(..., description="Docker container id")
    address: str = Field(..., description="host:port registered with the coordinator")
    health: str = Field(..., description="starting|healthy|unhealthy")
    state: str = Field(..., description="not_healthy|pending_add|member|pending_remove")
    version: int = Field(0, ge=0, description="Version of the latest command intent")
    alarm: str | None = Field(None, description="Permanent error awaiting operator action")
    queued: bool = Field(False, description="A command for this worker is waiting in the executor")
    updated_at: str

    @classmethod
    def from_record(cls, rec: WorkerRecord, queued: bool = False) -> "WorkerView":
        return cls(
            identity=rec.identity,
            address=str(rec.address),
            health=rec.health.value,
            state=rec.state.value,
            version=rec.version,
            alarm=rec.alarm,
            queued=queued,
            updated_at=rec.updated_at,
        )


class StatusResponse(BaseModel):
    status: str = "healthy"
    ready: bool
    scope: str
    workers: int = Field(0, ge=0)
    sweeps: int = Field(0, ge=0)


class RetryResponse(BaseModel):
    identity: str
    operation: str
    address: str
    version: int
