"""Project registration, updates and teardown."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from dockyard.core.contracts import (
    CertificateProvisioner,
    ContainerRuntime,
    ProxyProvisioner,
    SourceControl,
)
from dockyard.core.errors import ProjectNotFound
from dockyard.core.orchestrator import DeploymentOrchestrator
from dockyard.core.retention import VersionRetentionManager
from dockyard.db.store import SQLiteStore
from dockyard.models.events import DeployEvent, EventType
from dockyard.models.project import Project

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "repo_url", "branch", "port", "env", "domain", "ssl"})


@dataclass(slots=True)
class CreateProjectInput:
    """Input payload for project creation."""

    name: str
    repo_url: str
    port: int
    branch: str = "main"
    env: dict[str, str] = field(default_factory=dict)
    domain: str | None = None
    ssl: bool = False
    path: Path | None = None


class ProjectManager:
    """Manage registered projects and their proxy exposure."""

    def __init__(
        self,
        store: SQLiteStore,
        *,
        projects_dir: Path,
        orchestrator: DeploymentOrchestrator,
        retention: VersionRetentionManager,
        source: SourceControl,
        runtime: ContainerRuntime | None = None,
        proxy: ProxyProvisioner | None = None,
        certificates: CertificateProvisioner | None = None,
        source_timeout_seconds: float = 300.0,
    ) -> None:
        self._store = store
        self._projects_dir = projects_dir
        self._orchestrator = orchestrator
        self._retention = retention
        self._source = source
        self._runtime = runtime
        self._proxy = proxy
        self._certificates = certificates
        self._source_timeout_seconds = source_timeout_seconds

    async def create(self, payload: CreateProjectInput) -> Project:
        """Register a project, cloning its repository unless a path is given."""
        project_id = str(uuid4())
        path = payload.path or self._projects_dir / project_id
        if payload.path is None:
            await self._clone(payload, path)

        project = Project(
            id=project_id,
            name=payload.name,
            repo_url=payload.repo_url,
            branch=payload.branch,
            port=payload.port,
            env=dict(payload.env),
            path=path,
            domain=payload.domain,
            ssl=payload.ssl,
        )
        await self._store.upsert_project(project)
        if project.domain:
            await self._expose(project, project.domain)
        await self._store.append_event(
            DeployEvent(
                project_id=project.id,
                event_type=EventType.PROJECT_CREATED,
                payload={
                    "name": project.name,
                    "source": "path" if payload.path else "clone",
                    "repo_url": project.repo_url,
                    "branch": project.branch,
                },
            )
        )
        logger.info(f"Project {project.id} ({project.name}) registered at {project.path}")
        return project

    async def list(self) -> list[Project]:
        return await self._store.list_projects()

    async def get(self, project_id: str) -> Project | None:
        return await self._store.get_project(project_id)

    async def update(self, project_id: str, changes: dict[str, Any]) -> Project:
        """Apply descriptive changes; lifecycle fields are not accepted here.

        A domain, port or TLS change re-provisions the proxy route.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            msg = f"Fields cannot be updated: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        project = await self._store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)

        before = project.model_copy()
        for name, value in changes.items():
            setattr(project, name, value)
        project.touch()
        await self._store.update_details(project)

        route_changed = (
            before.domain != project.domain
            or before.port != project.port
            or before.ssl != project.ssl
        )
        if route_changed:
            if before.domain and self._proxy is not None:
                await self._proxy.deprovision(before.domain)
            if project.domain:
                await self._expose(project, project.domain)

        await self._store.append_event(
            DeployEvent(
                project_id=project.id,
                event_type=EventType.PROJECT_UPDATED,
                payload={"fields": ",".join(sorted(changes))},
            )
        )
        return project

    async def delete(self, project_id: str) -> None:
        """Cancel any attempt, remove instances, routes and snapshots, then the row."""
        project = await self._store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)

        if self._orchestrator.cancel(project.id):
            await self._orchestrator.wait_for(project.id)

        if self._runtime is not None:
            for instance in await self._runtime.list_instances(project.id):
                try:
                    await self._runtime.stop(instance.id)
                    await self._runtime.remove(instance.id)
                except Exception:
                    logger.warning(
                        f"Project {project.id}: failed to remove instance {instance.id}",
                        exc_info=True,
                    )
        if project.domain and self._proxy is not None:
            await self._proxy.deprovision(project.domain)

        await self._retention.purge(project.id)
        await self._store.delete_project(project.id)
        if project.path.is_relative_to(self._projects_dir):
            await asyncio.to_thread(shutil.rmtree, project.path, ignore_errors=True)

        await self._store.append_event(
            DeployEvent(
                project_id=project.id,
                event_type=EventType.PROJECT_DELETED,
                payload={"name": project.name},
            )
        )
        logger.info(f"Project {project.id} deleted")

    async def _clone(self, payload: CreateProjectInput, path: Path) -> None:
        try:
            async with asyncio.timeout(self._source_timeout_seconds):
                await self._source.clone(payload.repo_url, payload.branch, path)
        except TimeoutError:
            await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)
            msg = f"Cloning {payload.repo_url} timed out after {self._source_timeout_seconds}s"
            raise RuntimeError(msg) from None

    async def _expose(self, project: Project, domain: str) -> None:
        if self._proxy is not None:
            await self._proxy.provision(domain, project.port)
        if project.ssl and self._certificates is not None:
            await self._certificates.issue(domain)
