"""Deploy routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from dockyard.api.deps import (
    get_orchestrator,
    get_project_manager,
    get_retention,
    get_runtime,
)
from dockyard.api.routes.common import require_project, trigger_response
from dockyard.api.schemas.deploy import (
    AttemptResponse,
    DeployStatusResponse,
    LogsResponse,
    RollbackRequest,
    SnapshotResponse,
    SnapshotsResponse,
    StatsResponse,
    TriggerResponse,
)
from dockyard.core.contracts import ContainerInstance, ContainerRuntime
from dockyard.core.errors import NoSnapshotAvailable, ProjectNotFound
from dockyard.core.orchestrator import DeploymentOrchestrator
from dockyard.core.project_manager import ProjectManager
from dockyard.core.retention import VersionRetentionManager
from dockyard.models.project import Project

router = APIRouter(prefix="/api/v1/projects/{project_id}/deploy", tags=["deploy"])


@router.post("", response_model=TriggerResponse)
async def deploy(
    project_id: str,
    response: Response,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> TriggerResponse:
    try:
        outcome = await orchestrator.trigger_deploy(project_id)
    except ProjectNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Project not found"
        ) from exc
    if not outcome.accepted:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=outcome.reason)
    return trigger_response(outcome, response)


@router.post("/rollback", response_model=TriggerResponse)
async def rollback(
    project_id: str,
    response: Response,
    request: RollbackRequest | None = None,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> TriggerResponse:
    version = request.version if request is not None else None
    try:
        outcome = await orchestrator.trigger_rollback(project_id, version)
    except ProjectNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Project not found"
        ) from exc
    except NoSnapshotAvailable as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if not outcome.accepted:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=outcome.reason)
    return trigger_response(outcome, response)


@router.get("/status", response_model=DeployStatusResponse)
async def deploy_status(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> DeployStatusResponse:
    project = await require_project(project_id, manager)
    attempt = orchestrator.in_flight(project.id)
    return DeployStatusResponse(
        project_id=project.id,
        status=project.status,
        rolled_back=project.rolled_back,
        last_error=project.last_error,
        attempt_seq=project.attempt_seq,
        last_deployed_at=project.last_deployed_at,
        in_flight=(
            AttemptResponse(
                seq=attempt.seq,
                kind=attempt.kind.value,
                trigger_id=attempt.trigger_id,
                started_at=attempt.started_at,
            )
            if attempt is not None
            else None
        ),
    )


@router.get("/snapshots", response_model=SnapshotsResponse)
async def list_snapshots(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
    retention: VersionRetentionManager = Depends(get_retention),
) -> SnapshotsResponse:
    project = await require_project(project_id, manager)
    snapshots = await retention.list(project.id)
    return SnapshotsResponse(
        items=[
            SnapshotResponse(
                version=snapshot.version,
                artifact=snapshot.artifact,
                created_at=snapshot.created_at,
            )
            for snapshot in snapshots
        ],
        retention_count=retention.retention_count,
    )


@router.get("/logs", response_model=LogsResponse)
async def deploy_logs(
    project_id: str,
    tail: int = Query(default=100, ge=1, le=5000),
    manager: ProjectManager = Depends(get_project_manager),
    runtime: ContainerRuntime = Depends(get_runtime),
) -> LogsResponse:
    project = await require_project(project_id, manager)
    instance = await _live_instance(project, runtime)
    return LogsResponse(instance=instance.name, lines=await runtime.logs(instance.id, tail=tail))


@router.get("/stats", response_model=StatsResponse)
async def deploy_stats(
    project_id: str,
    manager: ProjectManager = Depends(get_project_manager),
    runtime: ContainerRuntime = Depends(get_runtime),
) -> StatsResponse:
    project = await require_project(project_id, manager)
    instance = await _live_instance(project, runtime)
    return StatsResponse(instance=instance.name, stats=await runtime.stats(instance.id))


async def _live_instance(project: Project, runtime: ContainerRuntime) -> ContainerInstance:
    instances = await runtime.list_instances(project.id)
    instance = next((i for i in instances if i.name == project.container_name), None)
    if instance is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No deployed instance")
    return instance
