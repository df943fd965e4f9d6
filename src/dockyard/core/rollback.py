"""Restore a prior snapshot and re-enter the health-gated deploy path."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from dockyard.core.errors import ErrorKind, NoSnapshotAvailable
from dockyard.core.retention import VersionRetentionManager
from dockyard.core.swap_controller import BlueGreenSwapController
from dockyard.db.store import SQLiteStore
from dockyard.models.attempt import DeploymentAttempt
from dockyard.models.events import DeployEvent, EventType
from dockyard.models.project import Project
from dockyard.models.snapshot import Snapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RollbackResult:
    """Outcome of restoring one snapshot."""

    success: bool
    snapshot: Snapshot
    error: ErrorKind | None = None
    message: str = ""
    events: list[DeployEvent] = field(default_factory=list)


class RollbackCoordinator:
    """Pick a snapshot, restore it, and validate it like any other deploy."""

    def __init__(
        self,
        *,
        retention: VersionRetentionManager,
        controller: BlueGreenSwapController,
        store: SQLiteStore,
    ) -> None:
        self._retention = retention
        self._controller = controller
        self._store = store

    async def select(
        self,
        project_id: str,
        *,
        target_version: str | None = None,
        before: datetime,
    ) -> Snapshot:
        """Resolve the snapshot to restore or raise ``NoSnapshotAvailable``."""
        if target_version is not None:
            snapshot = await self._retention.get(project_id, target_version)
            if snapshot is None:
                msg = f"Snapshot {target_version} not found"
                raise NoSnapshotAvailable(msg, project_id=project_id)
            return snapshot

        snapshot = await self._retention.latest_before(project_id, before)
        if snapshot is None:
            msg = "No snapshot to roll back to"
            raise NoSnapshotAvailable(msg, project_id=project_id)
        return snapshot

    async def rollback(
        self,
        project: Project,
        attempt: DeploymentAttempt,
        *,
        target_version: str | None = None,
        before: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RollbackResult:
        """Restore a snapshot for ``project`` within ``attempt``.

        Without ``target_version`` the newest snapshot strictly older than
        ``before`` (default: the attempt's start) is used.
        """
        snapshot = await self.select(
            project.id,
            target_version=target_version,
            before=before or attempt.started_at,
        )
        events: list[DeployEvent] = []
        await self._record(
            events,
            project.id,
            EventType.ROLLBACK_STARTED,
            {"attempt": attempt.seq, "version": snapshot.version, "artifact": snapshot.artifact},
        )
        logger.warning(
            f"Project {project.id} attempt {attempt.seq}: rolling back to {snapshot.version}"
        )

        try:
            await self._retention.restore_into(snapshot, project.path)
        except Exception as exc:
            message = f"Snapshot {snapshot.version} could not be unpacked: {exc}"
            logger.critical(f"Project {project.id} attempt {attempt.seq}: {message}")
            await self._record(
                events,
                project.id,
                EventType.ROLLBACK_COMPLETED,
                {"attempt": attempt.seq, "version": snapshot.version, "success": False},
            )
            return RollbackResult(
                success=False,
                snapshot=snapshot,
                error=ErrorKind.RESTORE_FAILED,
                message=message,
                events=events,
            )

        swap = await self._controller.run_restricted(
            project, attempt, snapshot.artifact, cancel=cancel
        )
        events.extend(swap.events)
        await self._record(
            events,
            project.id,
            EventType.ROLLBACK_COMPLETED,
            {"attempt": attempt.seq, "version": snapshot.version, "success": swap.success},
        )
        return RollbackResult(
            success=swap.success,
            snapshot=snapshot,
            error=swap.error,
            message=swap.message,
            events=events,
        )

    async def _record(
        self,
        sink: list[DeployEvent],
        project_id: str,
        event_type: EventType,
        payload: dict[str, str | int | float | bool | None],
    ) -> None:
        event = DeployEvent(project_id=project_id, event_type=event_type, payload=payload)
        sink.append(event)
        await self._store.append_event(event)
