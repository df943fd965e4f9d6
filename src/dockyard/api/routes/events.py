"""Audit trail routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from dockyard.api.deps import get_project_manager, get_store
from dockyard.api.routes.common import require_project
from dockyard.api.schemas.events import EventResponse, EventsResponse
from dockyard.core.project_manager import ProjectManager
from dockyard.db.store import SQLiteStore
from dockyard.models.events import EventType

router = APIRouter(prefix="/api/v1/projects/{project_id}/events", tags=["events"])


@router.get("", response_model=EventsResponse)
async def list_project_events(
    project_id: str,
    event_type: EventType | None = None,
    attempt: int | None = Query(default=None, ge=1),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=1000),
    manager: ProjectManager = Depends(get_project_manager),
    store: SQLiteStore = Depends(get_store),
) -> EventsResponse:
    """Return a project's audit trail, optionally narrowed to one deploy attempt.

    ``limit`` keeps the newest matching events; items stay oldest first.
    """
    await require_project(project_id, manager)
    if since is not None and until is not None and since > until:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="since must not be later than until",
        )

    events = await store.list_events(
        project_id=project_id,
        event_type=event_type,
        attempt=attempt,
        since=since,
        until=until,
        limit=limit,
    )
    return EventsResponse(
        project_id=project_id,
        attempt=attempt,
        items=[EventResponse.from_event(event) for event in events],
    )
