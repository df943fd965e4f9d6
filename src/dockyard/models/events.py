"""Event models for the deployment audit trail."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import TypeAlias
from uuid import uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event categories emitted by orchestration components."""

    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROJECT_DELETED = "project.deleted"
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_REJECTED = "webhook.rejected"
    WEBHOOK_IGNORED = "webhook.ignored"
    STATE_CHANGED = "state.changed"
    BUILD_STARTED = "build.started"
    BUILD_COMPLETED = "build.completed"
    BUILD_REPORTED = "build.reported"
    INSTANCE_STARTED = "instance.started"
    HEALTH_PROBE = "health.probe"
    DEPLOY_COMPLETED = "deploy.completed"
    SNAPSHOT_CREATED = "snapshot.created"
    SNAPSHOT_PRUNED = "snapshot.pruned"
    ROLLBACK_STARTED = "rollback.started"
    ROLLBACK_COMPLETED = "rollback.completed"
    RESTORE_FAILED = "restore.failed"
    ERROR = "error"


EventPayload: TypeAlias = dict[str, str | int | float | bool | None]


class DeployEvent(BaseModel):
    """Append-only event emitted by the orchestrator."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    event_type: EventType
    payload: EventPayload = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
