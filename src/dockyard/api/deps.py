"""Shared API dependency providers."""

from __future__ import annotations

from functools import lru_cache

from dockyard.adapters.alerts import LoggingAlerter, WebhookAlerter
from dockyard.adapters.docker_builder import DockerImageBuilder
from dockyard.adapters.docker_runtime import DockerRuntime
from dockyard.adapters.git_source import GitSource
from dockyard.adapters.health_probe import HttpHealthProbe
from dockyard.config import get_settings
from dockyard.core.contracts import Alerter, BuildSystem, ContainerRuntime
from dockyard.core.dispatcher import BuildTriggerDispatcher
from dockyard.core.orchestrator import DeploymentOrchestrator
from dockyard.core.project_manager import ProjectManager
from dockyard.core.retention import VersionRetentionManager
from dockyard.core.rollback import RollbackCoordinator
from dockyard.core.state_machine import DeploymentStateMachine
from dockyard.core.swap_controller import BlueGreenSwapController, SwapConfig
from dockyard.db.store import SQLiteStore


@lru_cache(maxsize=1)
def get_store() -> SQLiteStore:
    settings = get_settings()
    settings.database_path.parent.mkdir(parents=True, exist_ok=True)
    return SQLiteStore(db_path=settings.database_path)


@lru_cache(maxsize=1)
def get_runtime() -> ContainerRuntime:
    return DockerRuntime()


@lru_cache(maxsize=1)
def get_build_system() -> BuildSystem:
    return DockerImageBuilder()


@lru_cache(maxsize=1)
def get_source() -> GitSource:
    return GitSource(timeout_seconds=get_settings().source_timeout_seconds)


@lru_cache(maxsize=1)
def get_retention() -> VersionRetentionManager:
    settings = get_settings()
    return VersionRetentionManager(
        store=get_store(),
        snapshots_dir=settings.snapshots_dir,
        retention_count=settings.retention_count,
        build_system=get_build_system(),
    )


def get_alerter() -> Alerter:
    settings = get_settings()
    if settings.alert_webhook_url:
        return WebhookAlerter(settings.alert_webhook_url)
    return LoggingAlerter()


@lru_cache(maxsize=1)
def get_orchestrator() -> DeploymentOrchestrator:
    settings = get_settings()
    store = get_store()
    state_machine = DeploymentStateMachine(store)
    controller = BlueGreenSwapController(
        runtime=get_runtime(),
        build_system=get_build_system(),
        health_probe=HttpHealthProbe(
            host=settings.probe_host,
            path=settings.health_path,
            timeout_seconds=settings.health_timeout_seconds,
        ),
        store=store,
        config=SwapConfig(
            health_interval_seconds=settings.health_interval_seconds,
            health_max_attempts=settings.health_max_attempts,
            probe_timeout_seconds=settings.health_timeout_seconds,
            build_poll_interval_seconds=settings.build_poll_interval_seconds,
            build_timeout_seconds=settings.build_timeout_seconds,
            runtime_timeout_seconds=settings.runtime_timeout_seconds,
            restore_retries=settings.restore_retries,
        ),
    )
    retention = get_retention()
    return DeploymentOrchestrator(
        store=store,
        state_machine=state_machine,
        dispatcher=BuildTriggerDispatcher(
            store=store,
            state_machine=state_machine,
            secret=settings.source_webhook_secret,
        ),
        controller=controller,
        retention=retention,
        rollback=RollbackCoordinator(retention=retention, controller=controller, store=store),
        alerter=get_alerter(),
        source=get_source(),
        build_secret=settings.build_webhook_secret,
        source_timeout_seconds=settings.source_timeout_seconds,
    )


def get_project_manager() -> ProjectManager:
    return ProjectManager(
        get_store(),
        projects_dir=get_settings().projects_dir,
        orchestrator=get_orchestrator(),
        retention=get_retention(),
        source=get_source(),
        runtime=get_runtime(),
        source_timeout_seconds=get_settings().source_timeout_seconds,
    )
