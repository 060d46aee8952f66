"""Error taxonomy shared by every deploy-guardian component."""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from .guardian.models import DeadlockStatus
    from .health.models import ValidationResult


class FailureKind(Enum):
    """Failure signature used to pick a recovery strategy."""

    PORT_CONFLICT = "port_conflict"
    CONNECTION_REFUSED = "connection_refused"
    MISSING_ARTIFACT = "missing_artifact"
    OTHER = "other"


_SIGNATURES = (
    (FailureKind.PORT_CONFLICT, re.compile(r"address already in use|EADDRINUSE", re.IGNORECASE)),
    (
        FailureKind.CONNECTION_REFUSED,
        re.compile(r"connection refused|ECONNREFUSED|unable to connect to port", re.IGNORECASE),
    ),
    (FailureKind.MISSING_ARTIFACT, re.compile(r"no such file|ENOENT", re.IGNORECASE)),
)


def classify_failure(text: str) -> FailureKind:
    """Map raw error output to a FailureKind.

    Called once, where the failure is first observed. Everything
    downstream dispatches on the returned kind.
    """
    for kind, pattern in _SIGNATURES:
        if pattern.search(text or ""):
            return kind
    return FailureKind.OTHER


class GuardianError(Exception):
    """Base class for all deploy-guardian errors."""

    default_kind = FailureKind.OTHER

    def __init__(self, message: str, *, kind: Optional[FailureKind] = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind


class ConfigurationError(GuardianError):
    """Raised for unknown environments or malformed configuration."""


class OperationTimeoutError(GuardianError):
    """A bounded operation exceeded its deadline."""

    def __init__(self, message: str, *, timeout: Optional[float] = None) -> None:
        super().__init__(message)
        self.timeout = timeout


class CancelledError(GuardianError):
    """The caller withdrew the operation. Never counted as a failed attempt."""


class ExecError(GuardianError):
    """A remote command exited non-zero or the shell channel failed."""

    def __init__(
        self,
        command: str,
        exit_status: int,
        stderr: str,
        *,
        kind: Optional[FailureKind] = None,
    ) -> None:
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(
            f"Command failed with code {exit_status}: {stderr or '<no stderr>'}",
            kind=kind or classify_failure(stderr),
        )


class SyncError(GuardianError):
    """Repository synchronization could not converge on the target commit."""

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[FailureKind] = None,
        unrecoverable: bool = False,
    ) -> None:
        super().__init__(message, kind=kind)
        self.unrecoverable = unrecoverable


class ValidationError(GuardianError):
    """Health validation did not reach the pass threshold."""

    def __init__(self, result: "ValidationResult") -> None:
        self.result = result
        super().__init__(
            f"Post-deployment validation failed: "
            f"{result.healthy_count}/{result.total_count} endpoints healthy"
        )


class DeadlockError(GuardianError):
    """Soft signal: an (operation, target) pair exceeded its retry window."""

    def __init__(self, operation: str, target: str, status: "DeadlockStatus") -> None:
        self.operation = operation
        self.target = target
        self.status = status
        super().__init__(
            f"Deadlock detected for {operation}-{target}: "
            f"{status.attempt_count} attempts in {status.time_since_first:.0f}s"
        )


class FatalError(GuardianError):
    """Force recovery or rollback failed. Aborts the run without further attempts."""

    def __init__(self, message: str, causes: Sequence[BaseException] = ()) -> None:
        super().__init__(message)
        self.causes = tuple(causes)


class LockTimeoutError(GuardianError):
    """Another run already holds the target."""
