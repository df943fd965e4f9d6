"""Wire dispatch, swap, retention and rollback into background attempts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import uuid4
from typing import TypeAlias

from dockyard.core.contracts import Alerter, ContainerInstance, SourceControl
from dockyard.core.dispatcher import (
    BUILD_IN_PROGRESS,
    UNKNOWN_PROJECT,
    BuildTriggerDispatcher,
    DispatchDecision,
)
from dockyard.core.errors import (
    BuildFailed,
    DeployError,
    ErrorKind,
    NoSnapshotAvailable,
    ProjectNotFound,
    VerificationFailed,
)
from dockyard.core.guard import guarded
from dockyard.core.retention import VersionRetentionManager
from dockyard.core.rollback import RollbackCoordinator
from dockyard.core.signature import verify
from dockyard.core.state_machine import DeploymentStateMachine
from dockyard.core.swap_controller import BlueGreenSwapController
from dockyard.db.store import SQLiteStore
from dockyard.models.attempt import AttemptOutcome, DeploymentAttempt
from dockyard.models.events import DeployEvent, EventPayload, EventType
from dockyard.models.project import IN_FLIGHT_STATUSES, Project, ProjectStatus
from dockyard.models.webhook import WebhookEvent

logger = logging.getLogger(__name__)

BUILD_SUCCEEDED = "build succeeded"
UNSUPPORTED_STATUS = "unsupported status"
NO_SNAPSHOT = "no snapshot available"

AttemptRunner: TypeAlias = Callable[[asyncio.Event], Awaitable[None]]


@dataclass(slots=True)
class TriggerOutcome:
    """What happened to one trigger: an attempt started, or why not."""

    accepted: bool
    reason: str | None = None
    attempt: int | None = None

    @classmethod
    def started(cls, attempt: DeploymentAttempt) -> TriggerOutcome:
        return cls(accepted=True, attempt=attempt.seq)

    @classmethod
    def ignored(cls, reason: str) -> TriggerOutcome:
        return cls(accepted=False, reason=reason)


class DeploymentOrchestrator:
    """Own the background task of every in-flight attempt.

    Triggers return as soon as the attempt is admitted; the build, health
    gate and any recovery run as one ``asyncio.Task`` per project, which
    holds the project's in-flight slot until it finishes.
    """

    def __init__(
        self,
        *,
        store: SQLiteStore,
        state_machine: DeploymentStateMachine,
        dispatcher: BuildTriggerDispatcher,
        controller: BlueGreenSwapController,
        retention: VersionRetentionManager,
        rollback: RollbackCoordinator,
        alerter: Alerter,
        source: SourceControl | None = None,
        build_secret: str | None = None,
        source_timeout_seconds: float = 300.0,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._dispatcher = dispatcher
        self._controller = controller
        self._retention = retention
        self._rollback = rollback
        self._alerter = alerter
        self._source = source
        self._build_secret = build_secret
        self._source_timeout_seconds = source_timeout_seconds
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancels: dict[str, asyncio.Event] = {}

    def in_flight(self, project_id: str) -> DeploymentAttempt | None:
        return self._state_machine.in_flight(project_id)

    async def handle_source_webhook(self, event: WebhookEvent) -> TriggerOutcome:
        """Dispatch a source-control push; raises ``VerificationFailed`` on a bad signature."""
        try:
            decision = await self._dispatcher.dispatch(event)
        except VerificationFailed:
            await self._audit_webhook(event, EventType.WEBHOOK_REJECTED, {})
            raise
        return await self._admit(event, decision)

    async def trigger_deploy(self, project_id: str) -> TriggerOutcome:
        """Start an operator-initiated deploy of the tracked branch."""
        trigger_id = str(uuid4())
        decision = await self._dispatcher.dispatch_manual(project_id, trigger_id=trigger_id)
        if not decision.start_build:
            return TriggerOutcome.ignored(decision.reason or BUILD_IN_PROGRESS)
        project, attempt = decision.admitted()
        return self._launch_deploy(project, attempt)

    async def handle_build_report(self, event: WebhookEvent) -> TriggerOutcome:
        """Act on a build-system status report.

        A reported failure marks an idle or deployed project failed and rolls
        it back to its newest snapshot. Reports for a project with an attempt
        in flight are ignored, since that attempt tracks its own build.
        """
        if not verify(self._build_secret, event.raw_payload, event.signature):
            logger.warning(f"Rejected build report {event.id} for project {event.project_id}")
            await self._audit_webhook(event, EventType.WEBHOOK_REJECTED, {})
            raise VerificationFailed("Invalid signature", project_id=event.project_id)

        project = await self._store.get_project(event.project_id)
        if project is None:
            logger.info(f"Build report {event.id} ignored: {UNKNOWN_PROJECT}")
            return TriggerOutcome.ignored(UNKNOWN_PROJECT)

        payload = event.payload()
        status = str(payload.get("status", "")).lower()
        build_id = payload.get("build_id")
        await self._record(
            project.id,
            EventType.BUILD_REPORTED,
            {
                "webhook": event.id,
                "build_id": str(build_id) if build_id else None,
                "status": status,
            },
        )

        if status == "success":
            return TriggerOutcome.ignored(BUILD_SUCCEEDED)
        if status != "failure":
            return await self._ignore(event, project, UNSUPPORTED_STATUS)
        if self._state_machine.is_busy(project.id):
            return await self._ignore(event, project, BUILD_IN_PROGRESS)

        if project.status is ProjectStatus.FAILED:
            snapshot = await self._retention.latest_before(project.id, datetime.now(UTC))
            if snapshot is None:
                return await self._ignore(event, project, NO_SNAPSHOT)
            attempt = await self._state_machine.request_rollback(project, trigger_id=event.id)
            if attempt is None:
                return await self._ignore(event, project, BUILD_IN_PROGRESS)
            return self._launch_rollback(project, attempt, snapshot.version)

        attempt = await self._state_machine.report_failure(
            project, trigger_id=event.id, error=ErrorKind.BUILD_FAILED
        )
        if attempt is None:
            return await self._ignore(event, project, BUILD_IN_PROGRESS)
        attempt.error = ErrorKind.BUILD_FAILED
        return self._launch(
            project, attempt, lambda cancel: self._recover(project, attempt, cancel)
        )

    async def trigger_rollback(
        self, project_id: str, version: str | None = None
    ) -> TriggerOutcome:
        """Start an operator rollback to ``version`` or the previous snapshot.

        Raises ``ProjectNotFound`` or ``NoSnapshotAvailable`` before any state
        change; a busy project yields an ignored outcome.
        """
        project = await self._store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        if self._state_machine.is_busy(project.id):
            return TriggerOutcome.ignored(BUILD_IN_PROGRESS)

        before = datetime.now(UTC)
        if project.status is ProjectStatus.DEPLOYED and project.last_deployed_at is not None:
            # The live version's own snapshot is taken after it went live.
            before = project.last_deployed_at
        snapshot = await self._rollback.select(project.id, target_version=version, before=before)

        attempt = await self._state_machine.request_rollback(project)
        if attempt is None:
            return TriggerOutcome.ignored(BUILD_IN_PROGRESS)
        return self._launch_rollback(project, attempt, snapshot.version)

    def cancel(self, project_id: str) -> bool:
        """Signal the project's in-flight attempt to stop; ``False`` if none."""
        token = self._cancels.get(project_id)
        if token is None:
            return False
        logger.warning(f"Project {project_id}: cancelling in-flight attempt")
        token.set()
        return True

    async def wait_for(self, project_id: str) -> None:
        task = self._tasks.get(project_id)
        if task is not None:
            await asyncio.wait({task})

    async def recover(self) -> list[str]:
        """Fail attempts a previous process left mid-flight."""
        recovered = await self._state_machine.recover_interrupted(
            await self._store.list_projects()
        )
        for project_id in recovered:
            logger.warning(f"Project {project_id}: interrupted attempt marked failed")
        return recovered

    async def shutdown(self) -> None:
        """Cancel every in-flight attempt and wait for its cleanup."""
        for token in self._cancels.values():
            token.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _admit(self, event: WebhookEvent, decision: DispatchDecision) -> TriggerOutcome:
        if not decision.start_build:
            await self._audit_webhook(
                event, EventType.WEBHOOK_IGNORED, {"reason": decision.reason}
            )
            return TriggerOutcome.ignored(decision.reason or BUILD_IN_PROGRESS)

        project, attempt = decision.admitted()
        await self._record(
            project.id,
            EventType.WEBHOOK_RECEIVED,
            {"webhook": event.id, "event": event.event_type, "attempt": attempt.seq},
        )
        return self._launch_deploy(project, attempt)

    def _launch_deploy(self, project: Project, attempt: DeploymentAttempt) -> TriggerOutcome:
        return self._launch(
            project, attempt, lambda cancel: self._run_deploy(project, attempt, cancel)
        )

    def _launch_rollback(
        self, project: Project, attempt: DeploymentAttempt, version: str
    ) -> TriggerOutcome:
        return self._launch(
            project, attempt, lambda cancel: self._roll_back(project, attempt, version, cancel)
        )

    def _launch(
        self, project: Project, attempt: DeploymentAttempt, runner: AttemptRunner
    ) -> TriggerOutcome:
        cancel = asyncio.Event()
        task = asyncio.create_task(self._supervise(project, attempt, runner(cancel)))
        self._tasks[project.id] = task
        self._cancels[project.id] = cancel
        task.add_done_callback(lambda done: self._forget(project.id, done))
        logger.info(
            f"Project {project.id} attempt {attempt.seq}: {attempt.kind.value} started"
        )
        return TriggerOutcome.started(attempt)

    def _forget(self, project_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(project_id) is task:
            del self._tasks[project_id]
            self._cancels.pop(project_id, None)

    async def _supervise(
        self, project: Project, attempt: DeploymentAttempt, work: Awaitable[None]
    ) -> None:
        try:
            await work
        except Exception:
            logger.exception(f"Project {project.id} attempt {attempt.seq}: unexpected error")
            await self._mark_failed(project, attempt)
        finally:
            self._state_machine.release(attempt)

    async def _run_deploy(
        self, project: Project, attempt: DeploymentAttempt, cancel: asyncio.Event
    ) -> None:
        if not await self._sync_source(project, attempt, cancel):
            await self._recover(project, attempt, cancel)
            return

        async def instance_started(instance: ContainerInstance) -> None:
            await self._state_machine.transition(project, attempt, ProjectStatus.HEALTH_CHECKING)

        result = await self._controller.run_attempt(
            project, attempt, cancel=cancel, on_instance_started=instance_started
        )
        if result.success:
            await self._state_machine.transition(project, attempt, ProjectStatus.DEPLOYED)
            attempt.outcome = AttemptOutcome.SUCCESS
            await self._record(
                project.id,
                EventType.DEPLOY_COMPLETED,
                {
                    "attempt": attempt.seq,
                    "artifact": result.artifact,
                    "probes": result.health_probes,
                    "rolled_back": False,
                },
            )
            logger.info(f"Project {project.id} attempt {attempt.seq}: deployed {result.artifact}")
            if result.artifact is not None:
                await self._retain(project, result.artifact)
            return

        attempt.outcome = AttemptOutcome.FAILURE
        attempt.error = result.error
        await self._state_machine.transition(
            project, attempt, ProjectStatus.FAILED, error=result.error
        )
        await self._recover(project, attempt, cancel)

    async def _sync_source(
        self, project: Project, attempt: DeploymentAttempt, cancel: asyncio.Event
    ) -> bool:
        if self._source is None:
            return True
        try:
            await guarded(
                self._source.sync(project.path, project.branch),
                project_id=project.id,
                failure=BuildFailed,
                what="source sync",
                timeout=self._source_timeout_seconds,
                cancel=cancel,
            )
        except DeployError as exc:
            logger.warning(f"Project {project.id} attempt {attempt.seq}: {exc}")
            attempt.outcome = AttemptOutcome.FAILURE
            attempt.error = exc.kind
            await self._state_machine.transition(
                project, attempt, ProjectStatus.FAILED, error=exc.kind
            )
            return False
        return True

    async def _recover(
        self, project: Project, attempt: DeploymentAttempt, cancel: asyncio.Event
    ) -> None:
        """Roll a failed attempt back to the newest snapshot older than it."""
        if attempt.error is ErrorKind.RESTORE_FAILED:
            await self._alert(project, attempt, "Previous instance could not be restored")
            return
        if attempt.error is ErrorKind.CANCELLED or cancel.is_set():
            return

        snapshot = await self._retention.latest_before(project.id, attempt.started_at)
        if snapshot is None:
            logger.warning(
                f"Project {project.id} attempt {attempt.seq}: no snapshot to roll back to"
            )
            return
        await self._state_machine.transition(project, attempt, ProjectStatus.ROLLING_BACK)
        await self._roll_back(project, attempt, snapshot.version, cancel)

    async def _roll_back(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        version: str,
        cancel: asyncio.Event,
    ) -> None:
        try:
            result = await self._rollback.rollback(
                project, attempt, target_version=version, cancel=cancel
            )
        except NoSnapshotAvailable as exc:
            # Pruned or purged between selection and restore.
            logger.warning(f"Project {project.id} attempt {attempt.seq}: {exc}")
            attempt.error = exc.kind
            await self._state_machine.transition(
                project, attempt, ProjectStatus.FAILED, error=exc.kind
            )
            return

        if result.success:
            await self._state_machine.transition(project, attempt, ProjectStatus.DEPLOYED)
            attempt.outcome = AttemptOutcome.ROLLED_BACK
            await self._record(
                project.id,
                EventType.DEPLOY_COMPLETED,
                {"attempt": attempt.seq, "artifact": result.snapshot.artifact, "rolled_back": True},
            )
            logger.warning(
                f"Project {project.id} attempt {attempt.seq}: rolled back to "
                f"{result.snapshot.version}"
            )
            return

        attempt.outcome = AttemptOutcome.FAILURE
        attempt.error = result.error
        await self._state_machine.transition(
            project, attempt, ProjectStatus.FAILED, error=result.error
        )
        if result.error is ErrorKind.RESTORE_FAILED:
            await self._alert(
                project,
                attempt,
                f"Rollback to {result.snapshot.version} failed: {result.message}",
            )

    async def _retain(self, project: Project, artifact: str) -> None:
        try:
            await self._retention.snapshot(project, artifact)
            await self._retention.prune(project.id)
        except Exception:
            logger.exception(f"Project {project.id}: snapshot retention failed")

    async def _mark_failed(self, project: Project, attempt: DeploymentAttempt) -> None:
        await self._record(
            project.id,
            EventType.ERROR,
            {"attempt": attempt.seq, "message": "unexpected error during attempt"},
        )
        if project.status not in IN_FLIGHT_STATUSES:
            return
        try:
            await self._state_machine.transition(
                project, attempt, ProjectStatus.FAILED, error=attempt.error
            )
        except Exception:
            logger.exception(f"Project {project.id}: could not record failure")

    async def _alert(self, project: Project, attempt: DeploymentAttempt, message: str) -> None:
        try:
            await self._alerter.alert(project.id, attempt.seq, message)
        except Exception:
            logger.exception(f"Project {project.id}: alert delivery failed")

    async def _ignore(self, event: WebhookEvent, project: Project, reason: str) -> TriggerOutcome:
        logger.info(f"Build report {event.id} for project {project.id} ignored: {reason}")
        await self._record(
            project.id, EventType.WEBHOOK_IGNORED, {"webhook": event.id, "reason": reason}
        )
        return TriggerOutcome.ignored(reason)

    async def _audit_webhook(
        self, event: WebhookEvent, event_type: EventType, payload: EventPayload
    ) -> None:
        if await self._store.get_project(event.project_id) is None:
            return
        await self._record(
            event.project_id,
            event_type,
            {"webhook": event.id, "event": event.event_type, **payload},
        )

    async def _record(self, project_id: str, event_type: EventType, payload: EventPayload) -> None:
        await self._store.append_event(
            DeployEvent(project_id=project_id, event_type=event_type, payload=payload)
        )
