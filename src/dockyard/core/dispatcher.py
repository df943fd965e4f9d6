"""Decide whether an inbound event should start a build."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from dockyard.core.errors import ProjectNotFound, VerificationFailed
from dockyard.core.signature import verify
from dockyard.core.state_machine import DeploymentStateMachine
from dockyard.db.store import SQLiteStore
from dockyard.models.attempt import DeploymentAttempt
from dockyard.models.project import Project
from dockyard.models.webhook import PUSH_EVENT_TYPES, WebhookEvent

logger = logging.getLogger(__name__)

UNSUPPORTED_EVENT = "unsupported event"
UNKNOWN_PROJECT = "unknown project"
BRANCH_MISMATCH = "branch mismatch"
BUILD_IN_PROGRESS = "build in progress"


@dataclass(slots=True)
class DispatchDecision:
    """Outcome of dispatching one event."""

    start_build: bool
    reason: str | None = None
    project: Project | None = None
    attempt: DeploymentAttempt | None = None

    @classmethod
    def ignore(cls, reason: str, project: Project | None = None) -> DispatchDecision:
        return cls(start_build=False, reason=reason, project=project)

    def admitted(self) -> tuple[Project, DeploymentAttempt]:
        """Return the project and reserved attempt of an accepted decision."""
        if not self.start_build or self.project is None or self.attempt is None:
            msg = f"Decision was not admitted: {self.reason or 'missing attempt'}"
            raise RuntimeError(msg)
        return self.project, self.attempt


class BuildTriggerDispatcher:
    """Verify, filter and admit inbound build triggers."""

    def __init__(
        self,
        *,
        store: SQLiteStore,
        state_machine: DeploymentStateMachine,
        secret: str | None,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._secret = secret

    async def dispatch(self, event: WebhookEvent) -> DispatchDecision:
        """Admit or ignore a source-control event.

        Raises ``VerificationFailed`` for a bad or missing signature; nothing
        else about the event is inspected in that case.
        """
        if not verify(self._secret, event.raw_payload, event.signature):
            logger.warning(f"Rejected webhook {event.id} for project {event.project_id}")
            raise VerificationFailed("Invalid signature", project_id=event.project_id)

        if event.event_type not in PUSH_EVENT_TYPES:
            return self._ignored(event, UNSUPPORTED_EVENT)

        project = await self._store.get_project(event.project_id)
        if project is None:
            return self._ignored(event, UNKNOWN_PROJECT)

        branch = event.branch()
        if branch != project.branch:
            return self._ignored(event, BRANCH_MISMATCH, project)

        attempt = await self._state_machine.request_build(project, trigger_id=event.id)
        if attempt is None:
            return self._ignored(event, BUILD_IN_PROGRESS, project)

        logger.info(
            f"Webhook {event.id} admitted for project {project.id} "
            f"(branch {branch}, attempt {attempt.seq})"
        )
        return DispatchDecision(start_build=True, project=project, attempt=attempt)

    async def dispatch_manual(self, project_id: str, *, trigger_id: str) -> DispatchDecision:
        """Admit an operator-initiated build, skipping signature and branch rules."""
        project = await self._store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        attempt = await self._state_machine.request_build(project, trigger_id=trigger_id)
        if attempt is None:
            return DispatchDecision.ignore(BUILD_IN_PROGRESS, project)
        return DispatchDecision(start_build=True, project=project, attempt=attempt)

    @staticmethod
    def _ignored(
        event: WebhookEvent, reason: str, project: Project | None = None
    ) -> DispatchDecision:
        logger.info(f"Webhook {event.id} for project {event.project_id} ignored: {reason}")
        return DispatchDecision.ignore(reason, project)
