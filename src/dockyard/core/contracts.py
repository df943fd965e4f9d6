"""Narrow contracts for the services the orchestrator coordinates."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, TypeAlias

from dockyard.models.project import Project

Sleeper: TypeAlias = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class ContainerInstance:
    """A container known to the runtime."""

    id: str
    name: str
    running: bool
    image: str | None = None
    host_port: int | None = None


@dataclass(slots=True)
class InstanceSpec:
    """Start request for a new instance of a built artifact."""

    name: str
    artifact: str
    port: int
    env: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


class BuildState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(slots=True)
class BuildRequest:
    """Typed build request handed to the build system adapter."""

    project_id: str
    source_path: Path
    branch: str
    image: str
    tag: str


@dataclass(slots=True)
class BuildStatus:
    build_id: str
    state: BuildState
    message: str = ""

    @property
    def finished(self) -> bool:
        return self.state in (BuildState.SUCCESS, BuildState.FAILURE)


class ContainerRuntime(Protocol):
    async def list_instances(self, project_id: str) -> list[ContainerInstance]: ...

    async def start(self, spec: InstanceSpec) -> ContainerInstance: ...

    async def stop(self, instance_id: str) -> None: ...

    async def remove(self, instance_id: str) -> None: ...

    async def rename(self, instance_id: str, new_name: str) -> None: ...

    async def ensure_running(self, instance_id: str) -> ContainerInstance: ...

    async def logs(self, instance_id: str, *, tail: int = 100) -> list[str]: ...

    async def stats(self, instance_id: str) -> dict[str, Any]: ...


class BuildSystem(Protocol):
    async def submit(self, request: BuildRequest) -> str: ...

    async def status(self, build_id: str) -> BuildStatus: ...

    async def artifact(self, build_id: str) -> str: ...

    async def discard(self, artifact: str) -> None: ...


class HealthProbe(Protocol):
    async def probe(self, project: Project, instance: ContainerInstance) -> bool: ...


class Alerter(Protocol):
    async def alert(self, project_id: str, seq: int, message: str) -> None: ...


class ProxyProvisioner(Protocol):
    async def provision(self, domain: str, port: int) -> None: ...

    async def deprovision(self, domain: str) -> None: ...


class CertificateProvisioner(Protocol):
    async def issue(self, domain: str) -> None: ...


class SourceControl(Protocol):
    async def clone(self, repo_url: str, branch: str, path: Path) -> None: ...

    async def sync(self, path: Path, branch: str) -> None: ...
