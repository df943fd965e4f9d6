from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from dockyard.core.errors import ProjectNotFound
from dockyard.core.project_manager import CreateProjectInput, ProjectManager
from dockyard.models.events import EventType
from tests.support.fakes import FakeCertificates, FakeProxy
from tests.support.harness import Harness, build_harness


def _manager(harness: Harness) -> tuple[ProjectManager, FakeProxy, FakeCertificates]:
    proxy = FakeProxy()
    certificates = FakeCertificates()
    manager = ProjectManager(
        harness.store,
        projects_dir=harness.tmp_path / "projects",
        orchestrator=harness.orchestrator,
        retention=harness.retention,
        source=harness.source,
        runtime=harness.runtime,
        proxy=proxy,
        certificates=certificates,
    )
    return manager, proxy, certificates


@pytest.mark.asyncio
async def test_create_clones_repository(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    manager, proxy, _ = _manager(harness)

    project = await manager.create(
        CreateProjectInput(name="demo", repo_url="https://example.com/demo.git", port=8080)
    )

    assert project.path == tmp_path / "projects" / project.id
    assert harness.source.cloned == [("https://example.com/demo.git", "main", project.path)]
    assert proxy.provisioned == []
    stored = await manager.get(project.id)
    assert stored is not None
    events = await harness.store.list_events(
        project_id=project.id, event_type=EventType.PROJECT_CREATED
    )
    assert events[0].payload["source"] == "clone"


@pytest.mark.asyncio
async def test_create_gives_up_on_hung_clone(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    harness.source.hang_clone = asyncio.Event()
    manager = ProjectManager(
        harness.store,
        projects_dir=harness.tmp_path / "projects",
        orchestrator=harness.orchestrator,
        retention=harness.retention,
        source=harness.source,
        source_timeout_seconds=0.05,
    )

    with pytest.raises(RuntimeError, match="timed out"):
        await asyncio.wait_for(
            manager.create(CreateProjectInput(name="demo", repo_url="r", port=8080)), timeout=2
        )

    assert harness.source.cloned == []
    assert await manager.list() == []


@pytest.mark.asyncio
async def test_create_from_path_exposes_domain(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    manager, proxy, certificates = _manager(harness)
    work = tmp_path / "existing"
    work.mkdir()

    project = await manager.create(
        CreateProjectInput(
            name="site",
            repo_url="https://example.com/site.git",
            port=3000,
            domain="site.example.com",
            ssl=True,
            path=work,
        )
    )

    assert project.path == work
    assert harness.source.cloned == []
    assert proxy.provisioned == [("site.example.com", 3000)]
    assert certificates.issued == ["site.example.com"]
    assert [p.id for p in await manager.list()] == [project.id]


@pytest.mark.asyncio
async def test_update_reprovisions_changed_domain(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    manager, proxy, _ = _manager(harness)
    project = await manager.create(
        CreateProjectInput(
            name="site", repo_url="r", port=3000, domain="old.example.com", path=tmp_path
        )
    )

    updated = await manager.update(project.id, {"domain": "new.example.com", "name": "renamed"})

    assert updated.name == "renamed"
    assert proxy.deprovisioned == ["old.example.com"]
    assert proxy.provisioned[-1] == ("new.example.com", 3000)
    stored = await manager.get(project.id)
    assert stored is not None
    assert stored.domain == "new.example.com"


@pytest.mark.asyncio
async def test_update_without_route_change_leaves_proxy_alone(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    manager, proxy, _ = _manager(harness)
    project = await manager.create(
        CreateProjectInput(
            name="site", repo_url="r", port=3000, domain="a.example.com", path=tmp_path
        )
    )

    await manager.update(project.id, {"env": {"MODE": "prod"}})

    assert proxy.deprovisioned == []
    assert proxy.provisioned == [("a.example.com", 3000)]


@pytest.mark.asyncio
async def test_update_rejects_lifecycle_fields(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    manager, _, _ = _manager(harness)
    project = await harness.add_project()

    with pytest.raises(ValueError, match="status"):
        await manager.update(project.id, {"status": "deployed"})
    with pytest.raises(ProjectNotFound):
        await manager.update("missing", {"name": "x"})


@pytest.mark.asyncio
async def test_delete_removes_instances_snapshots_and_row(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    manager, proxy, _ = _manager(harness)
    project = await manager.create(
        CreateProjectInput(name="demo", repo_url="r", port=8080, domain="demo.example.com")
    )
    await harness.deploy(project)
    assert harness.runtime.instances

    await manager.delete(project.id)

    assert harness.runtime.instances == {}
    assert await manager.get(project.id) is None
    assert await harness.retention.list(project.id) == []
    assert not project.path.exists()
    assert proxy.deprovisioned == ["demo.example.com"]
    with pytest.raises(ProjectNotFound):
        await manager.delete(project.id)


@pytest.mark.asyncio
async def test_delete_cancels_in_flight_attempt(tmp_path: Path) -> None:
    harness = build_harness(tmp_path)
    manager, _, _ = _manager(harness)
    project = await harness.add_project()
    harness.build_system.gate = asyncio.Event()

    outcome = await harness.orchestrator.trigger_deploy(project.id)
    assert outcome.accepted is True

    await manager.delete(project.id)

    assert harness.orchestrator.in_flight(project.id) is None
    assert harness.build_system.requests == []
    assert await manager.get(project.id) is None
    assert project.path.exists()
