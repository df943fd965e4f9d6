"""Rollback snapshot creation and retention."""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TypeAlias

from dockyard.core.contracts import BuildSystem
from dockyard.db.store import SQLiteStore
from dockyard.models.events import DeployEvent, EventType
from dockyard.models.project import Project
from dockyard.models.snapshot import Snapshot

logger = logging.getLogger(__name__)

VERSION_FORMAT = "%Y%m%dT%H%M%S%fZ"
ARCHIVE_SUFFIX = ".tar.gz"

Clock: TypeAlias = Callable[[], datetime]


def version_label(moment: datetime) -> str:
    """Render a timestamp as a sortable version label."""
    return moment.astimezone(UTC).strftime(VERSION_FORMAT)


def parse_version(label: str) -> datetime:
    return datetime.strptime(label, VERSION_FORMAT).replace(tzinfo=UTC)


class VersionRetentionManager:
    """Create, list, restore and prune per-project snapshots.

    Snapshot creation and pruning for the same project are serialized, so a
    reader never sees a half-pruned list.
    """

    def __init__(
        self,
        *,
        store: SQLiteStore,
        snapshots_dir: Path,
        retention_count: int = 5,
        clock: Clock | None = None,
        build_system: BuildSystem | None = None,
    ) -> None:
        if retention_count < 1:
            msg = "retention_count must be at least 1"
            raise ValueError(msg)
        self._store = store
        self._snapshots_dir = snapshots_dir
        self._retention_count = retention_count
        self._clock = clock or (lambda: datetime.now(UTC))
        self._build_system = build_system
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def retention_count(self) -> int:
        return self._retention_count

    async def snapshot(self, project: Project, artifact: str) -> Snapshot:
        """Archive the project's working area as a new version."""
        async with self._lock(project.id):
            existing = await self._store.list_snapshots(project.id)
            version = self._next_version(existing[-1].version if existing else None)
            location = self._snapshots_dir / project.id / f"{version}{ARCHIVE_SUFFIX}"
            await asyncio.to_thread(self._archive, project.path, location)

            snapshot = Snapshot(
                project_id=project.id,
                version=version,
                artifact=artifact,
                location=location,
            )
            await self._store.add_snapshot(snapshot)
            await self._store.append_event(
                DeployEvent(
                    project_id=project.id,
                    event_type=EventType.SNAPSHOT_CREATED,
                    payload={"version": version, "artifact": artifact},
                )
            )
            logger.info(f"Project {project.id}: snapshot {version} created for {artifact}")
            return snapshot

    async def prune(self, project_id: str) -> list[str]:
        """Delete the oldest snapshots beyond the retention count.

        Best effort: a failed deletion is logged and ends the pass, leaving the
        remaining excess for the next prune. The image of a pruned snapshot is
        removed unless a retained snapshot still uses it. Returns the deleted
        versions.
        """
        pruned: list[str] = []
        async with self._lock(project_id):
            snapshots = await self._store.list_snapshots(project_id)
            excess = max(0, len(snapshots) - self._retention_count)
            retained = {s.artifact for s in snapshots[excess:]}
            for snapshot in snapshots[:excess]:
                try:
                    await asyncio.to_thread(snapshot.location.unlink, missing_ok=True)
                    await self._store.delete_snapshot(project_id, snapshot.version)
                except Exception:
                    logger.warning(
                        f"Project {project_id}: could not prune snapshot {snapshot.version}",
                        exc_info=True,
                    )
                    break
                pruned.append(snapshot.version)
                if snapshot.artifact not in retained:
                    retained.add(snapshot.artifact)
                    await self._discard(project_id, snapshot.artifact)

        if pruned:
            logger.info(f"Project {project_id}: pruned snapshots {', '.join(pruned)}")
            await self._store.append_event(
                DeployEvent(
                    project_id=project_id,
                    event_type=EventType.SNAPSHOT_PRUNED,
                    payload={"versions": ",".join(pruned), "retained": self._retention_count},
                )
            )
        return pruned

    async def list(self, project_id: str) -> list[Snapshot]:
        """Return snapshots ordered oldest first."""
        async with self._lock(project_id):
            return await self._store.list_snapshots(project_id)

    async def get(self, project_id: str, version: str) -> Snapshot | None:
        return next((s for s in await self.list(project_id) if s.version == version), None)

    async def latest_before(self, project_id: str, moment: datetime) -> Snapshot | None:
        """Return the newest snapshot strictly older than ``moment``."""
        cutoff = version_label(moment)
        candidates = [s for s in await self.list(project_id) if s.version < cutoff]
        return candidates[-1] if candidates else None

    async def restore_into(self, snapshot: Snapshot, destination: Path) -> None:
        """Replace ``destination`` with the snapshot's archived working area."""
        async with self._lock(snapshot.project_id):
            await asyncio.to_thread(self._unpack, snapshot.location, destination)
        logger.info(
            f"Project {snapshot.project_id}: restored snapshot {snapshot.version} "
            f"into {destination}"
        )

    async def purge(self, project_id: str) -> None:
        """Remove every snapshot of a deleted project."""
        async with self._lock(project_id):
            snapshots = await self._store.list_snapshots(project_id)
            for snapshot in snapshots:
                await self._store.delete_snapshot(project_id, snapshot.version)
            for artifact in dict.fromkeys(s.artifact for s in snapshots):
                await self._discard(project_id, artifact)
            await asyncio.to_thread(
                shutil.rmtree, self._snapshots_dir / project_id, ignore_errors=True
            )
        self._locks.pop(project_id, None)

    async def _discard(self, project_id: str, artifact: str) -> None:
        if self._build_system is None:
            return
        try:
            await self._build_system.discard(artifact)
        except Exception:
            logger.warning(
                f"Project {project_id}: could not remove artifact {artifact}", exc_info=True
            )

    def _next_version(self, latest: str | None) -> str:
        moment = self._clock()
        if latest is not None:
            floor = parse_version(latest) + timedelta(microseconds=1)
            moment = max(moment.astimezone(UTC), floor)
        return version_label(moment)

    @staticmethod
    def _archive(source: Path, location: Path) -> None:
        location.parent.mkdir(parents=True, exist_ok=True)
        base_name = str(location)[: -len(ARCHIVE_SUFFIX)]
        shutil.make_archive(base_name, "gztar", root_dir=str(source))

    @staticmethod
    def _unpack(location: Path, destination: Path) -> None:
        if not location.exists():
            msg = f"Snapshot archive missing: {location}"
            raise FileNotFoundError(msg)
        if destination.exists():
            shutil.rmtree(destination)
        destination.mkdir(parents=True, exist_ok=True)
        shutil.unpack_archive(str(location), str(destination), format="gztar")

    def _lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock
