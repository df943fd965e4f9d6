"""Deployment lifecycle state machine.

State flow::

    idle | deployed | failed --build--> building --started--> health_checking
    idle | deployed --reported failure--> failed
    health_checking --healthy--> deployed
    building | health_checking --failure--> failed --rollback--> rolling_back
    rolling_back --healthy--> deployed (rolled back) | --failure--> failed

Only one attempt per project may hold ``building``, ``health_checking`` or
``rolling_back`` at a time. The in-flight slot is reserved synchronously, so
two triggers racing on the event loop can never both win it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from uuid import uuid4

from dockyard.core.errors import ErrorKind, InvalidTransition
from dockyard.db.store import SQLiteStore
from dockyard.models.attempt import AttemptKind, DeploymentAttempt
from dockyard.models.events import DeployEvent, EventType
from dockyard.models.project import IN_FLIGHT_STATUSES, Project, ProjectStatus

logger = logging.getLogger(__name__)


class DeploymentStateMachine:
    """Own a project's lifecycle state and its transition rules."""

    VALID_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
        ProjectStatus.IDLE: frozenset(
            {ProjectStatus.BUILDING, ProjectStatus.ROLLING_BACK, ProjectStatus.FAILED}
        ),
        ProjectStatus.DEPLOYED: frozenset(
            {ProjectStatus.BUILDING, ProjectStatus.ROLLING_BACK, ProjectStatus.FAILED}
        ),
        ProjectStatus.FAILED: frozenset({ProjectStatus.BUILDING, ProjectStatus.ROLLING_BACK}),
        ProjectStatus.BUILDING: frozenset({ProjectStatus.HEALTH_CHECKING, ProjectStatus.FAILED}),
        ProjectStatus.HEALTH_CHECKING: frozenset({ProjectStatus.DEPLOYED, ProjectStatus.FAILED}),
        ProjectStatus.ROLLING_BACK: frozenset({ProjectStatus.DEPLOYED, ProjectStatus.FAILED}),
    }

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store
        self._in_flight: dict[str, DeploymentAttempt] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def can_transition(self, from_state: ProjectStatus, to_state: ProjectStatus) -> bool:
        return to_state in self.VALID_TRANSITIONS.get(from_state, frozenset())

    def in_flight(self, project_id: str) -> DeploymentAttempt | None:
        return self._in_flight.get(project_id)

    def is_busy(self, project_id: str) -> bool:
        return project_id in self._in_flight

    async def request_build(
        self, project: Project, *, trigger_id: str | None = None
    ) -> DeploymentAttempt | None:
        """Reserve the in-flight slot and enter ``building``.

        Returns ``None`` (no transition) when another attempt holds the slot.
        """
        return await self._begin(project, trigger_id, AttemptKind.DEPLOY, ProjectStatus.BUILDING)

    async def request_rollback(
        self, project: Project, *, trigger_id: str | None = None
    ) -> DeploymentAttempt | None:
        """Reserve the in-flight slot for an operator or CI-initiated rollback."""
        return await self._begin(
            project, trigger_id, AttemptKind.ROLLBACK, ProjectStatus.ROLLING_BACK
        )

    async def report_failure(
        self, project: Project, *, trigger_id: str | None = None, error: ErrorKind
    ) -> DeploymentAttempt | None:
        """Reserve the slot and record an externally reported failure."""
        return await self._begin(
            project, trigger_id, AttemptKind.ROLLBACK, ProjectStatus.FAILED, error=error
        )

    async def transition(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        to_state: ProjectStatus,
        *,
        error: ErrorKind | None = None,
    ) -> Project:
        """Move ``project`` to ``to_state`` on behalf of ``attempt`` and persist it."""
        async with self._lock(project.id):
            holder = self._in_flight.get(project.id)
            if holder is not attempt:
                msg = f"Attempt {attempt.seq} does not hold project {project.id}"
                raise InvalidTransition(msg)

            from_state = project.status
            if not self.can_transition(from_state, to_state):
                msg = (
                    f"Invalid state transition for project {project.id}: "
                    f"{from_state.value} -> {to_state.value}"
                )
                logger.error(msg)
                raise InvalidTransition(msg)

            now = datetime.now(UTC)
            project.status = to_state
            project.attempt_seq = max(project.attempt_seq, attempt.seq)
            if to_state is ProjectStatus.DEPLOYED:
                project.rolled_back = from_state is ProjectStatus.ROLLING_BACK
                project.last_error = None
                project.last_deployed_at = now
            elif to_state is ProjectStatus.FAILED:
                project.last_error = error
            project.touch()
            await self._store.update_lifecycle(project)

            logger.info(
                f"Project {project.id} attempt {attempt.seq}: "
                f"{from_state.value} -> {to_state.value}"
            )
            await self._store.append_event(
                DeployEvent(
                    project_id=project.id,
                    event_type=EventType.STATE_CHANGED,
                    payload={
                        "attempt": attempt.seq,
                        "from": from_state.value,
                        "to": to_state.value,
                        "error": error.value if error else None,
                        "rolled_back": project.rolled_back,
                    },
                    timestamp=now,
                )
            )
            return project

    def release(self, attempt: DeploymentAttempt) -> None:
        """Free the in-flight slot held by ``attempt``."""
        if self._in_flight.get(attempt.project_id) is attempt:
            del self._in_flight[attempt.project_id]

    async def recover_interrupted(self, projects: list[Project]) -> list[str]:
        """Mark projects left mid-attempt by a previous process as failed."""
        recovered: list[str] = []
        for project in projects:
            if project.status not in IN_FLIGHT_STATUSES or self.is_busy(project.id):
                continue
            attempt = DeploymentAttempt(
                project_id=project.id,
                trigger_id="recovery",
                seq=project.attempt_seq,
            )
            self._in_flight[project.id] = attempt
            try:
                await self.transition(
                    project, attempt, ProjectStatus.FAILED, error=ErrorKind.CANCELLED
                )
            finally:
                self.release(attempt)
            recovered.append(project.id)
        return recovered

    async def _begin(
        self,
        project: Project,
        trigger_id: str | None,
        kind: AttemptKind,
        to_state: ProjectStatus,
        *,
        error: ErrorKind | None = None,
    ) -> DeploymentAttempt | None:
        attempt = self._reserve(project, trigger_id, kind, to_state)
        if attempt is None:
            return None
        try:
            await self.transition(project, attempt, to_state, error=error)
        except BaseException:
            self.release(attempt)
            raise
        return attempt

    def _reserve(
        self,
        project: Project,
        trigger_id: str | None,
        kind: AttemptKind,
        to_state: ProjectStatus,
    ) -> DeploymentAttempt | None:
        if project.id in self._in_flight:
            logger.info(f"Project {project.id}: {kind.value} rejected, attempt in flight")
            return None
        if not self.can_transition(project.status, to_state):
            logger.info(
                f"Project {project.id}: {kind.value} rejected from {project.status.value}"
            )
            return None
        attempt = DeploymentAttempt(
            project_id=project.id,
            trigger_id=trigger_id or str(uuid4()),
            seq=project.attempt_seq + 1,
            kind=kind,
        )
        self._in_flight[project.id] = attempt
        return attempt

    def _lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock
