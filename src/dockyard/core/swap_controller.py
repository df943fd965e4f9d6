"""Blue/green container swap with health gating."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeAlias, TypeVar

from dockyard.core.contracts import (
    BuildRequest,
    BuildState,
    BuildSystem,
    ContainerInstance,
    ContainerRuntime,
    HealthProbe,
    InstanceSpec,
    Sleeper,
)
from dockyard.core.errors import (
    AttemptCancelled,
    BuildFailed,
    DeployError,
    ErrorKind,
    HealthCheckTimeout,
    RestoreFailed,
)
from dockyard.core.guard import guarded
from dockyard.db.store import SQLiteStore
from dockyard.models.attempt import DeploymentAttempt
from dockyard.models.events import DeployEvent, EventPayload, EventType
from dockyard.models.project import Project

logger = logging.getLogger(__name__)

T = TypeVar("T")

InstanceStartedHook: TypeAlias = Callable[[ContainerInstance], Awaitable[None]]

PROJECT_LABEL = "dockyard.project"
ATTEMPT_LABEL = "dockyard.attempt"


@dataclass(slots=True)
class SwapConfig:
    """Polling and timeout parameters for one attempt."""

    health_interval_seconds: float = 2.0
    health_max_attempts: int = 30
    probe_timeout_seconds: float = 10.0
    build_poll_interval_seconds: float = 5.0
    build_timeout_seconds: float = 900.0
    runtime_timeout_seconds: float = 60.0
    restore_retries: int = 3


@dataclass(slots=True)
class SwapResult:
    """Outcome of one swap run."""

    success: bool
    error: ErrorKind | None = None
    message: str = ""
    artifact: str | None = None
    instance: ContainerInstance | None = None
    health_probes: int = 0
    events: list[DeployEvent] = field(default_factory=list)


class BlueGreenSwapController:
    """Run one build, start, health-gate and retire-or-restore cycle.

    The previous instance keeps serving through the build and is only stopped
    when the new one needs ``project.port``. It is removed only after the new
    instance passes its health gate. On any failure the new instance and its
    image are discarded and the previous one is put back under the primary
    name and started again.
    """

    def __init__(
        self,
        *,
        runtime: ContainerRuntime,
        build_system: BuildSystem,
        health_probe: HealthProbe,
        store: SQLiteStore,
        config: SwapConfig | None = None,
        sleeper: Sleeper | None = None,
    ) -> None:
        self._runtime = runtime
        self._build_system = build_system
        self._health_probe = health_probe
        self._store = store
        self._config = config or SwapConfig()
        self._sleep = sleeper or asyncio.sleep

    @property
    def config(self) -> SwapConfig:
        return self._config

    async def run_attempt(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        *,
        cancel: asyncio.Event | None = None,
        on_instance_started: InstanceStartedHook | None = None,
    ) -> SwapResult:
        """Build the project's current source and swap it in."""
        events: list[DeployEvent] = []
        previous: ContainerInstance | None = None
        instance: ContainerInstance | None = None
        artifact: str | None = None
        try:
            previous = await self._tag_previous(project, cancel)
            artifact = await self._build(project, attempt, cancel, events)
            await self._release_port(project, previous, cancel)
            instance = await self._start(project, attempt, artifact, cancel, events)
            if on_instance_started is not None:
                await on_instance_started(instance)
            probes = await self._await_healthy(project, attempt, instance, cancel, events)
        except DeployError as exc:
            return await self._fail(
                project,
                attempt,
                exc,
                previous=previous,
                instance=instance,
                artifact=artifact,
                events=events,
                discard_artifact=True,
            )

        await self._retire(project, previous)
        return SwapResult(
            success=True,
            artifact=artifact,
            instance=instance,
            health_probes=probes,
            events=events,
        )

    async def run_restricted(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        artifact: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SwapResult:
        """Swap in an already-built artifact; the build step is skipped.

        Any failure here means the known-good content could not be revived,
        so it is reported as ``RESTORE_FAILED``.
        """
        events: list[DeployEvent] = []
        previous: ContainerInstance | None = None
        instance: ContainerInstance | None = None
        try:
            previous = await self._tag_previous(project, cancel)
            await self._release_port(project, previous, cancel)
            instance = await self._start(project, attempt, artifact, cancel, events)
            probes = await self._await_healthy(project, attempt, instance, cancel, events)
        except DeployError as exc:
            restore_exc: DeployError = exc
            if not isinstance(exc, AttemptCancelled):
                restore_exc = RestoreFailed(
                    f"Restored artifact {artifact} did not come up: {exc}",
                    project_id=project.id,
                    seq=attempt.seq,
                )
            return await self._fail(
                project,
                attempt,
                restore_exc,
                previous=previous,
                instance=instance,
                artifact=artifact,
                events=events,
            )

        await self._retire(project, previous)
        return SwapResult(
            success=True,
            artifact=artifact,
            instance=instance,
            health_probes=probes,
            events=events,
        )

    async def _tag_previous(
        self, project: Project, cancel: asyncio.Event | None
    ) -> ContainerInstance | None:
        instances = await self._guard(
            self._runtime.list_instances(project.id),
            cancel=cancel,
            project=project,
            failure=BuildFailed,
            what="list instances",
        )
        primary = next((i for i in instances if i.name == project.container_name), None)
        stale = next((i for i in instances if i.name == project.previous_container_name), None)

        if primary is None:
            # An interrupted attempt can leave only the renamed instance behind.
            return stale

        if stale is not None:
            logger.warning(f"Project {project.id}: removing stale instance {stale.name}")
            await self._discard(project, stale)

        await self._guard(
            self._runtime.rename(primary.id, project.previous_container_name),
            cancel=cancel,
            project=project,
            failure=BuildFailed,
            what="tag previous instance",
        )
        primary.name = project.previous_container_name
        logger.info(f"Project {project.id}: tagged {primary.id} as previous instance")
        return primary

    async def _release_port(
        self,
        project: Project,
        previous: ContainerInstance | None,
        cancel: asyncio.Event | None,
    ) -> None:
        """Stop the previous instance so the new one can bind ``project.port``.

        The container is kept; a failed attempt renames it back and starts it.
        """
        if previous is None or not previous.running:
            return
        await self._guard(
            self._runtime.stop(previous.id),
            cancel=cancel,
            project=project,
            failure=HealthCheckTimeout,
            what="stop previous instance",
        )
        previous.running = False
        logger.info(f"Project {project.id}: stopped {previous.id} to free port {project.port}")

    async def _build(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        cancel: asyncio.Event | None,
        events: list[DeployEvent],
    ) -> str:
        request = BuildRequest(
            project_id=project.id,
            source_path=project.path,
            branch=project.branch,
            image=project.image_name,
            tag=str(attempt.seq),
        )
        build_id = await self._guard(
            self._build_system.submit(request),
            cancel=cancel,
            project=project,
            failure=BuildFailed,
            what="submit build",
        )
        await self._record(
            events,
            project.id,
            EventType.BUILD_STARTED,
            {"attempt": attempt.seq, "build_id": build_id, "branch": project.branch},
        )

        max_polls = max(
            1, int(self._config.build_timeout_seconds // self._config.build_poll_interval_seconds)
        )
        for poll in range(max_polls):
            status = await self._guard(
                self._build_system.status(build_id),
                cancel=cancel,
                project=project,
                failure=BuildFailed,
                what="poll build",
            )
            if status.state is BuildState.SUCCESS:
                artifact = await self._guard(
                    self._build_system.artifact(build_id),
                    cancel=cancel,
                    project=project,
                    failure=BuildFailed,
                    what="fetch artifact",
                )
                await self._record(
                    events,
                    project.id,
                    EventType.BUILD_COMPLETED,
                    {"attempt": attempt.seq, "build_id": build_id, "artifact": artifact},
                )
                return artifact
            if status.state is BuildState.FAILURE:
                await self._record(
                    events,
                    project.id,
                    EventType.BUILD_COMPLETED,
                    {"attempt": attempt.seq, "build_id": build_id, "status": "failure"},
                )
                msg = f"Build {build_id} failed: {status.message or 'no details'}"
                raise BuildFailed(msg, project_id=project.id, seq=attempt.seq)
            if poll < max_polls - 1:
                await self._pause(self._config.build_poll_interval_seconds, cancel, project)

        msg = f"Build {build_id} did not finish within {self._config.build_timeout_seconds}s"
        raise BuildFailed(msg, project_id=project.id, seq=attempt.seq)

    async def _start(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        artifact: str,
        cancel: asyncio.Event | None,
        events: list[DeployEvent],
    ) -> ContainerInstance:
        spec = InstanceSpec(
            name=project.container_name,
            artifact=artifact,
            port=project.port,
            env=dict(project.env),
            labels={PROJECT_LABEL: project.id, ATTEMPT_LABEL: str(attempt.seq)},
        )
        instance = await self._guard(
            self._runtime.start(spec),
            cancel=cancel,
            project=project,
            failure=HealthCheckTimeout,
            what="start instance",
        )
        await self._record(
            events,
            project.id,
            EventType.INSTANCE_STARTED,
            {"attempt": attempt.seq, "instance": instance.id, "artifact": artifact},
        )
        return instance

    async def _await_healthy(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        instance: ContainerInstance,
        cancel: asyncio.Event | None,
        events: list[DeployEvent],
    ) -> int:
        ceiling = self._config.health_max_attempts
        for probe in range(1, ceiling + 1):
            try:
                healthy = await self._guard(
                    self._health_probe.probe(project, instance),
                    cancel=cancel,
                    project=project,
                    failure=HealthCheckTimeout,
                    what="health probe",
                    timeout=self._config.probe_timeout_seconds,
                )
            except HealthCheckTimeout:
                healthy = False

            if healthy:
                await self._record(
                    events,
                    project.id,
                    EventType.HEALTH_PROBE,
                    {"attempt": attempt.seq, "probes": probe, "healthy": True},
                )
                logger.info(f"Project {project.id} attempt {attempt.seq}: healthy after {probe}")
                return probe

            logger.debug(f"Project {project.id} attempt {attempt.seq}: probe {probe} failed")
            if probe < ceiling:
                await self._pause(self._config.health_interval_seconds, cancel, project)

        await self._record(
            events,
            project.id,
            EventType.HEALTH_PROBE,
            {"attempt": attempt.seq, "probes": ceiling, "healthy": False},
        )
        msg = f"Instance {instance.id} not healthy after {ceiling} probes"
        raise HealthCheckTimeout(msg, project_id=project.id, seq=attempt.seq)

    async def _retire(self, project: Project, previous: ContainerInstance | None) -> None:
        if previous is None:
            return
        await self._discard(project, previous)
        logger.info(f"Project {project.id}: retired previous instance {previous.id}")

    async def _fail(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        exc: DeployError,
        *,
        previous: ContainerInstance | None,
        instance: ContainerInstance | None,
        artifact: str | None,
        events: list[DeployEvent],
        discard_artifact: bool = False,
    ) -> SwapResult:
        logger.warning(f"Project {project.id} attempt {attempt.seq} failed: {exc}")
        if instance is not None:
            await self._discard(project, instance)
        if discard_artifact and artifact is not None:
            await self._discard_artifact(project, artifact)

        error = exc.kind
        message = str(exc)
        if previous is not None and not await self._restore_previous(project, attempt, previous):
            error = ErrorKind.RESTORE_FAILED
            message = f"{exc}; previous instance {previous.id} could not be restored"

        if error is ErrorKind.RESTORE_FAILED:
            logger.critical(
                f"Project {project.id} attempt {attempt.seq}: {message}. "
                "Manual intervention required"
            )
            await self._record(
                events,
                project.id,
                EventType.RESTORE_FAILED,
                {"attempt": attempt.seq, "message": message},
            )
        return SwapResult(
            success=False,
            error=error,
            message=message,
            artifact=artifact,
            events=events,
        )

    async def _restore_previous(
        self, project: Project, attempt: DeploymentAttempt, previous: ContainerInstance
    ) -> bool:
        for attempt_no in range(1, self._config.restore_retries + 1):
            try:
                async with asyncio.timeout(self._config.runtime_timeout_seconds):
                    if previous.name != project.container_name:
                        await self._runtime.rename(previous.id, project.container_name)
                        previous.name = project.container_name
                    await self._runtime.ensure_running(previous.id)
            except Exception:
                logger.error(
                    f"Project {project.id} attempt {attempt.seq}: restore try {attempt_no} "
                    f"of {self._config.restore_retries} failed",
                    exc_info=True,
                )
                if attempt_no < self._config.restore_retries:
                    await self._sleep(self._config.health_interval_seconds)
                continue
            logger.warning(
                f"Project {project.id} attempt {attempt.seq}: previous instance "
                f"{previous.id} restored"
            )
            return True
        return False

    async def _discard(self, project: Project, instance: ContainerInstance) -> None:
        try:
            async with asyncio.timeout(self._config.runtime_timeout_seconds):
                await self._runtime.stop(instance.id)
                await self._runtime.remove(instance.id)
        except Exception:
            logger.warning(
                f"Project {project.id}: failed to remove instance {instance.id}", exc_info=True
            )

    async def _discard_artifact(self, project: Project, artifact: str) -> None:
        try:
            async with asyncio.timeout(self._config.runtime_timeout_seconds):
                await self._build_system.discard(artifact)
        except Exception:
            logger.warning(
                f"Project {project.id}: failed to discard artifact {artifact}", exc_info=True
            )
            return
        logger.info(f"Project {project.id}: discarded artifact {artifact}")

    async def _guard(
        self,
        call: Awaitable[T],
        *,
        cancel: asyncio.Event | None,
        project: Project,
        failure: type[DeployError],
        what: str,
        timeout: float | None = None,
    ) -> T:
        return await guarded(
            call,
            project_id=project.id,
            failure=failure,
            what=what,
            timeout=timeout if timeout is not None else self._config.runtime_timeout_seconds,
            cancel=cancel,
        )

    async def _pause(
        self, seconds: float, cancel: asyncio.Event | None, project: Project
    ) -> None:
        if cancel is None:
            await self._sleep(seconds)
            return
        if cancel.is_set():
            raise AttemptCancelled("Cancelled while waiting", project_id=project.id)
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        cancel_waiter = asyncio.ensure_future(cancel.wait())
        done, pending = await asyncio.wait(
            {sleeper, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
        )
        for waiter in pending:
            waiter.cancel()
        if cancel_waiter in done:
            raise AttemptCancelled("Cancelled while waiting", project_id=project.id)

    async def _record(
        self,
        sink: list[DeployEvent],
        project_id: str,
        event_type: EventType,
        payload: EventPayload,
    ) -> None:
        event = DeployEvent(project_id=project_id, event_type=event_type, payload=payload)
        sink.append(event)
        await self._store.append_event(event)
