"""Deployment attempt bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from dockyard.core.errors import ErrorKind


class AttemptKind(str, Enum):
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ROLLED_BACK = "rolled_back"


@dataclass(slots=True)
class DeploymentAttempt:
    """One build, health-check and swap cycle for a project.

    Lives only while the attempt is in flight; its effect is reflected in the
    project status and, on success, in a new snapshot.
    """

    project_id: str
    trigger_id: str
    seq: int
    kind: AttemptKind = AttemptKind.DEPLOY
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    outcome: AttemptOutcome | None = None
    error: ErrorKind | None = None
