"""Async SQLite persistence for orchestrator models."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

from dockyard.core.errors import ErrorKind
from dockyard.db.migrations import apply_migrations
from dockyard.models.events import DeployEvent, EventType
from dockyard.models.project import Project, ProjectStatus
from dockyard.models.snapshot import Snapshot


class SQLiteStore:
    """Data access layer for projects, snapshots and events."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self._db_path)
        conn.row_factory = aiosqlite.Row
        try:
            await apply_migrations(conn)
            yield conn
        finally:
            await conn.close()

    async def upsert_project(self, project: Project) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO projects(
                    id,
                    name,
                    repo_url,
                    branch,
                    port,
                    env,
                    path,
                    domain,
                    ssl,
                    status,
                    rolled_back,
                    last_error,
                    attempt_seq,
                    last_deployed_at,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    repo_url=excluded.repo_url,
                    branch=excluded.branch,
                    port=excluded.port,
                    env=excluded.env,
                    path=excluded.path,
                    domain=excluded.domain,
                    ssl=excluded.ssl,
                    status=excluded.status,
                    rolled_back=excluded.rolled_back,
                    last_error=excluded.last_error,
                    attempt_seq=excluded.attempt_seq,
                    last_deployed_at=excluded.last_deployed_at,
                    updated_at=excluded.updated_at
                """,
                (
                    project.id,
                    project.name,
                    project.repo_url,
                    project.branch,
                    project.port,
                    json.dumps(project.env),
                    str(project.path),
                    project.domain,
                    int(project.ssl),
                    project.status.value,
                    int(project.rolled_back),
                    project.last_error.value if project.last_error else None,
                    project.attempt_seq,
                    project.last_deployed_at.isoformat() if project.last_deployed_at else None,
                    project.created_at.isoformat(),
                    project.updated_at.isoformat(),
                ),
            )
            await conn.commit()

    async def update_lifecycle(self, project: Project) -> None:
        """Persist only the lifecycle columns owned by the state machine."""
        async with self.connection() as conn:
            await conn.execute(
                """
                UPDATE projects SET
                    status = ?,
                    rolled_back = ?,
                    last_error = ?,
                    attempt_seq = ?,
                    last_deployed_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    project.status.value,
                    int(project.rolled_back),
                    project.last_error.value if project.last_error else None,
                    project.attempt_seq,
                    project.last_deployed_at.isoformat() if project.last_deployed_at else None,
                    project.updated_at.isoformat(),
                    project.id,
                ),
            )
            await conn.commit()

    async def update_details(self, project: Project) -> None:
        """Persist descriptive columns without touching lifecycle state."""
        async with self.connection() as conn:
            await conn.execute(
                """
                UPDATE projects SET
                    name = ?,
                    repo_url = ?,
                    branch = ?,
                    port = ?,
                    env = ?,
                    domain = ?,
                    ssl = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    project.name,
                    project.repo_url,
                    project.branch,
                    project.port,
                    json.dumps(project.env),
                    project.domain,
                    int(project.ssl),
                    project.updated_at.isoformat(),
                    project.id,
                ),
            )
            await conn.commit()

    async def list_projects(self) -> list[Project]:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT * FROM projects ORDER BY created_at ASC")
            rows = await cursor.fetchall()
        return [self._project_from_row(row) for row in rows]

    async def get_project(self, project_id: str) -> Project | None:
        async with self.connection() as conn:
            cursor = await conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._project_from_row(row)

    async def delete_project(self, project_id: str) -> None:
        async with self.connection() as conn:
            await conn.execute("DELETE FROM snapshots WHERE project_id = ?", (project_id,))
            await conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            await conn.commit()

    async def add_snapshot(self, snapshot: Snapshot) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO snapshots(project_id, version, artifact, location, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    snapshot.project_id,
                    snapshot.version,
                    snapshot.artifact,
                    str(snapshot.location),
                    snapshot.created_at.isoformat(),
                ),
            )
            await conn.commit()

    async def list_snapshots(self, project_id: str) -> list[Snapshot]:
        """Return snapshots for a project ordered by version, oldest first."""
        async with self.connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM snapshots WHERE project_id = ? ORDER BY version ASC",
                (project_id,),
            )
            rows = await cursor.fetchall()
        return [self._snapshot_from_row(row) for row in rows]

    async def delete_snapshot(self, project_id: str, version: str) -> None:
        async with self.connection() as conn:
            await conn.execute(
                "DELETE FROM snapshots WHERE project_id = ? AND version = ?",
                (project_id, version),
            )
            await conn.commit()

    async def append_event(self, event: DeployEvent) -> None:
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO deploy_events(id, project_id, event_type, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.project_id,
                    event.event_type.value,
                    json.dumps(event.payload),
                    event.timestamp.isoformat(),
                ),
            )
            await conn.commit()

    async def list_events(
        self,
        *,
        project_id: str | None = None,
        event_type: EventType | None = None,
        attempt: int | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[DeployEvent]:
        """Return matching events oldest first; ``limit`` keeps the newest ones."""
        query = "SELECT * FROM deploy_events WHERE 1 = 1"
        params: list[str | int] = []

        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)

        if event_type:
            query += " AND event_type = ?"
            params.append(event_type.value)

        if attempt is not None:
            query += " AND json_extract(payload, '$.attempt') = ?"
            params.append(attempt)

        if since:
            query += " AND timestamp >= ?"
            params.append(since.isoformat())

        if until:
            query += " AND timestamp <= ?"
            params.append(until.isoformat())

        if limit is not None:
            query += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
            params.append(limit)
        else:
            query += " ORDER BY timestamp ASC, rowid ASC"

        async with self.connection() as conn:
            cursor = await conn.execute(query, tuple(params))
            rows = list(await cursor.fetchall())

        if limit is not None:
            rows.reverse()
        return [self._event_from_row(row) for row in rows]

    @staticmethod
    def _project_from_row(row: aiosqlite.Row) -> Project:
        return Project(
            id=str(row["id"]),
            name=str(row["name"]),
            repo_url=str(row["repo_url"]),
            branch=str(row["branch"]),
            port=int(row["port"]),
            env=json.loads(str(row["env"])),
            path=Path(str(row["path"])),
            domain=str(row["domain"]) if row["domain"] else None,
            ssl=bool(row["ssl"]),
            status=ProjectStatus(str(row["status"])),
            rolled_back=bool(row["rolled_back"]),
            last_error=ErrorKind(str(row["last_error"])) if row["last_error"] else None,
            attempt_seq=int(row["attempt_seq"]),
            last_deployed_at=(
                datetime.fromisoformat(str(row["last_deployed_at"]))
                if row["last_deployed_at"]
                else None
            ),
            created_at=datetime.fromisoformat(str(row["created_at"])),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
        )

    @staticmethod
    def _snapshot_from_row(row: aiosqlite.Row) -> Snapshot:
        return Snapshot(
            project_id=str(row["project_id"]),
            version=str(row["version"]),
            artifact=str(row["artifact"]),
            location=Path(str(row["location"])),
            created_at=datetime.fromisoformat(str(row["created_at"])),
        )

    @staticmethod
    def _event_from_row(row: aiosqlite.Row) -> DeployEvent:
        return DeployEvent(
            id=str(row["id"]),
            project_id=str(row["project_id"]),
            event_type=EventType(str(row["event_type"])),
            payload=json.loads(str(row["payload"])),
            timestamp=datetime.fromisoformat(str(row["timestamp"])),
        )
