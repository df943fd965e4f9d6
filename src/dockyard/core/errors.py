"""Error taxonomy for deployment orchestration."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Distinct failure conditions surfaced by the orchestrator."""

    VERIFICATION_FAILED = "verification_failed"
    IGNORED = "ignored"
    BUILD_FAILED = "build_failed"
    HEALTH_CHECK_TIMEOUT = "health_check_timeout"
    RESTORE_FAILED = "restore_failed"
    NO_SNAPSHOT_AVAILABLE = "no_snapshot_available"
    CANCELLED = "cancelled"


class DeployError(Exception):
    """Base class for orchestration failures that carry an ``ErrorKind``."""

    kind: ErrorKind

    def __init__(self, message: str, *, project_id: str | None = None, seq: int | None = None):
        super().__init__(message)
        self.project_id = project_id
        self.seq = seq


class VerificationFailed(DeployError):
    kind = ErrorKind.VERIFICATION_FAILED


class BuildFailed(DeployError):
    kind = ErrorKind.BUILD_FAILED


class HealthCheckTimeout(DeployError):
    kind = ErrorKind.HEALTH_CHECK_TIMEOUT


class RestoreFailed(DeployError):
    """The previous instance could not be revived; the project may be down."""

    kind = ErrorKind.RESTORE_FAILED


class NoSnapshotAvailable(DeployError):
    kind = ErrorKind.NO_SNAPSHOT_AVAILABLE


class AttemptCancelled(DeployError):
    kind = ErrorKind.CANCELLED


class ProjectNotFound(LookupError):
    """Raised when a project id does not resolve."""


class InvalidTransition(RuntimeError):
    """Raised when a lifecycle transition is not allowed from the current state."""
