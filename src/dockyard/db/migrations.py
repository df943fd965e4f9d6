"""SQLite migrations for orchestrator storage."""

from __future__ import annotations

import aiosqlite

SCHEMA_VERSION = 1


async def apply_migrations(conn: aiosqlite.Connection) -> None:
    """Create projects, snapshots and the event log if missing."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY
        )
        """
    )

    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            repo_url TEXT NOT NULL,
            branch TEXT NOT NULL,
            port INTEGER NOT NULL,
            env TEXT NOT NULL,
            path TEXT NOT NULL,
            domain TEXT,
            ssl INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            rolled_back INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            attempt_seq INTEGER NOT NULL DEFAULT 0,
            last_deployed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )

    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS snapshots (
            project_id TEXT NOT NULL,
            version TEXT NOT NULL,
            artifact TEXT NOT NULL,
            location TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY(project_id, version)
        )
        """
    )

    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS deploy_events (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            payload TEXT NOT NULL,
            timestamp TEXT NOT NULL
        )
        """
    )
    await conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_deploy_events_project "
        "ON deploy_events(project_id, timestamp)"
    )

    await conn.execute("DELETE FROM schema_migrations")
    await conn.execute("INSERT INTO schema_migrations(version) VALUES (?)", (SCHEMA_VERSION,))
    await conn.commit()
