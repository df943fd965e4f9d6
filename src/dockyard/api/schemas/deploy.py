"""Deploy API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

from dockyard.core.errors import ErrorKind
from dockyard.models.project import ProjectStatus


class TriggerResponse(BaseModel):
    """Result of a deploy, rollback or webhook trigger."""

    status: Literal["accepted", "ignored"]
    attempt: int | None = None
    reason: str | None = None


class RollbackRequest(BaseModel):
    version: str | None = None


class AttemptResponse(BaseModel):
    seq: int
    kind: str
    trigger_id: str
    started_at: datetime


class DeployStatusResponse(BaseModel):
    """Lifecycle view of one project."""

    project_id: str
    status: ProjectStatus
    rolled_back: bool
    last_error: ErrorKind | None
    attempt_seq: int
    last_deployed_at: datetime | None
    in_flight: AttemptResponse | None = None


class SnapshotResponse(BaseModel):
    version: str
    artifact: str
    created_at: datetime


class SnapshotsResponse(BaseModel):
    items: list[SnapshotResponse]
    retention_count: int


class LogsResponse(BaseModel):
    instance: str
    lines: list[str]


class StatsResponse(BaseModel):
    instance: str
    stats: dict[str, Any]
