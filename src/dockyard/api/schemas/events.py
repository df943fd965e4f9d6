"""Audit event API schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from dockyard.models.events import DeployEvent, EventPayload, EventType


class EventResponse(BaseModel):
    """One audit trail record."""

    id: str
    event_type: EventType
    payload: EventPayload
    timestamp: datetime

    @classmethod
    def from_event(cls, event: DeployEvent) -> EventResponse:
        return cls(
            id=event.id,
            event_type=event.event_type,
            payload=event.payload,
            timestamp=event.timestamp,
        )


class EventsResponse(BaseModel):
    """Audit trail of one project, oldest first."""

    project_id: str
    attempt: int | None = None
    items: list[EventResponse]
