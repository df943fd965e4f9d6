"""Project API schemas."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from dockyard.models.project import Project


class CreateProjectRequest(BaseModel):
    """Payload for registering a project.

    Without ``path`` the repository is cloned into the managed projects area.
    """

    name: str = Field(min_length=1)
    repo_url: str
    port: int = Field(ge=1, le=65535)
    branch: str = "main"
    env: dict[str, str] = Field(default_factory=dict)
    domain: str | None = None
    ssl: bool = False
    path: Path | None = None


class UpdateProjectRequest(BaseModel):
    """Partial update; only fields present in the body are applied."""

    name: str | None = Field(default=None, min_length=1)
    repo_url: str | None = None
    branch: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    env: dict[str, str] | None = None
    domain: str | None = None
    ssl: bool | None = None


class ProjectsResponse(BaseModel):
    """Collection response for projects."""

    items: list[Project]
