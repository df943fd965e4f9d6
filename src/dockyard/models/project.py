"""Project domain models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel, Field

from dockyard.core.errors import ErrorKind


class ProjectStatus(str, Enum):
    """Lifecycle status for a managed project."""

    IDLE = "idle"
    BUILDING = "building"
    HEALTH_CHECKING = "health_checking"
    DEPLOYED = "deployed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"


IN_FLIGHT_STATUSES = frozenset(
    {ProjectStatus.BUILDING, ProjectStatus.HEALTH_CHECKING, ProjectStatus.ROLLING_BACK}
)


class Project(BaseModel):
    """Managed project metadata."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    repo_url: str
    branch: str = "main"
    port: int
    env: dict[str, str] = Field(default_factory=dict)
    path: Path
    domain: str | None = None
    ssl: bool = False
    status: ProjectStatus = ProjectStatus.IDLE
    rolled_back: bool = False
    last_error: ErrorKind | None = None
    attempt_seq: int = 0
    last_deployed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def touch(self) -> None:
        """Update mutation timestamp."""
        self.updated_at = datetime.now(UTC)

    @property
    def container_name(self) -> str:
        return f"dockyard-{self.id}"

    @property
    def previous_container_name(self) -> str:
        return f"dockyard-{self.id}-previous"

    @property
    def image_name(self) -> str:
        return f"dockyard/{self.id}"
