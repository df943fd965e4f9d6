"""Project routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from dockyard.api.deps import get_project_manager
from dockyard.api.routes.common import require_project
from dockyard.api.schemas.projects import (
    CreateProjectRequest,
    ProjectsResponse,
    UpdateProjectRequest,
)
from dockyard.core.errors import ProjectNotFound
from dockyard.core.project_manager import CreateProjectInput, ProjectManager
from dockyard.models.project import Project

router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


@router.get("", response_model=ProjectsResponse)
async def list_projects(manager: ProjectManager = Depends(get_project_manager)) -> ProjectsResponse:
    return ProjectsResponse(items=await manager.list())


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_project(
    request: CreateProjectRequest,
    manager: ProjectManager = Depends(get_project_manager),
) -> dict[str, str]:
    try:
        project = await manager.create(
            CreateProjectInput(
                name=request.name,
                repo_url=request.repo_url,
                port=request.port,
                branch=request.branch,
                env=request.env,
                domain=request.domain,
                ssl=request.ssl,
                path=request.path,
            )
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"id": project.id}


@router.get("/{project_id}")
async def get_project(
    project_id: str, manager: ProjectManager = Depends(get_project_manager)
) -> dict[str, Project]:
    return {"project": await require_project(project_id, manager)}


@router.patch("/{project_id}")
async def update_project(
    project_id: str,
    request: UpdateProjectRequest,
    manager: ProjectManager = Depends(get_project_manager),
) -> dict[str, Project]:
    try:
        project = await manager.update(project_id, request.model_dump(exclude_unset=True))
    except ProjectNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Project not found"
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    return {"project": project}


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
) -> None:
    try:
        await manager.delete(project_id)
    except ProjectNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Project not found"
        ) from exc
