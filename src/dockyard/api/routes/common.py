"""Common route helpers."""

from __future__ import annotations

from fastapi import HTTPException, Response, status

from dockyard.api.schemas.deploy import TriggerResponse
from dockyard.core.orchestrator import TriggerOutcome
from dockyard.core.project_manager import ProjectManager
from dockyard.models.project import Project


async def require_project(project_id: str, manager: ProjectManager) -> Project:
    """Load project or return 404."""
    project = await manager.get(project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


def trigger_response(outcome: TriggerOutcome, response: Response) -> TriggerResponse:
    """Render a trigger outcome: 202 when an attempt started, 200 when ignored."""
    if outcome.accepted:
        response.status_code = status.HTTP_202_ACCEPTED
        return TriggerResponse(status="accepted", attempt=outcome.attempt)
    return TriggerResponse(status="ignored", reason=outcome.reason)
