"""Data models for the deployment orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..gitops import LocalState
from ..health import ValidationResult
from ..sync import SyncResult


class Phase(Enum):
    """Stage of a deployment run."""
    PENDING = "pending"
    PRE_CHECK = "pre_check"
    SYNC = "sync"
    DEPLOY = "deploy"
    VALIDATE = "validate"
    ROLLBACK = "rollback"
    DONE = "done"


# Rollback is a side path reachable from any phase after pre-check.
PHASE_TRANSITIONS: Dict[Phase, frozenset] = {
    Phase.PENDING: frozenset({Phase.PRE_CHECK, Phase.DONE}),
    Phase.PRE_CHECK: frozenset({Phase.SYNC, Phase.DONE}),
    Phase.SYNC: frozenset({Phase.DEPLOY, Phase.ROLLBACK, Phase.DONE}),
    Phase.DEPLOY: frozenset({Phase.VALIDATE, Phase.ROLLBACK, Phase.DONE}),
    Phase.VALIDATE: frozenset({Phase.ROLLBACK, Phase.DONE}),
    Phase.ROLLBACK: frozenset({Phase.DONE}),
    Phase.DONE: frozenset(),
}


class RunOutcome(Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    FATAL = "fatal"
    CANCELLED = "cancelled"


@dataclass
class PhaseLogEntry:
    """One line of the in-memory phase log."""
    phase: Phase
    message: str
    level: str = "info"
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    def __str__(self) -> str:
        return f"[{self.phase.value.upper()}] {self.message}"


@dataclass
class DeployOptions:
    """User-selected switches for one deployment run."""
    reason: str = "Manual deployment"
    force_sync: bool = False
    clear_cache: bool = True
    auto_rollback: bool = False
    startup_delay: Optional[float] = None


@dataclass
class DeploymentRun:
    """One orchestration pass for one environment.

    The phase log is returned to the caller on success and failure alike.
    """
    environment: str
    options: DeployOptions = field(default_factory=DeployOptions)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    phase: Phase = Phase.PENDING
    local_state: Optional[LocalState] = None
    log: List[PhaseLogEntry] = field(default_factory=list)
    sync_result: Optional[SyncResult] = None
    validation: Optional[ValidationResult] = None
    rollback_commit: Optional[str] = None
    outcome: RunOutcome = RunOutcome.RUNNING
    error: Optional[str] = None
    rollback_error: Optional[str] = None
    finished_at: Optional[datetime] = None

    def enter(self, phase: Phase) -> None:
        if phase not in PHASE_TRANSITIONS[self.phase]:
            raise RuntimeError(
                f"Illegal phase transition: {self.phase.value} -> {phase.value}"
            )
        self.phase = phase

    def add_log(self, message: str, level: str = "info") -> PhaseLogEntry:
        entry = PhaseLogEntry(phase=self.phase, message=message, level=level)
        self.log.append(entry)
        return entry

    def finish(self, outcome: RunOutcome, error: Optional[str] = None) -> None:
        self.outcome = outcome
        if error is not None:
            self.error = error
        self.finished_at = datetime.now(timezone.utc)
        if self.phase is not Phase.DONE:
            self.enter(Phase.DONE)

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.SUCCEEDED

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "reason": self.options.reason,
            "options": {
                "force_sync": self.options.force_sync,
                "clear_cache": self.options.clear_cache,
                "auto_rollback": self.options.auto_rollback,
            },
            "start_time": self.started_at.isoformat(),
            "end_time": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "status": self.outcome.value,
            "local": self.local_state.to_dict() if self.local_state else None,
            "sync": self.sync_result.to_dict() if self.sync_result else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "rollback_commit": self.rollback_commit,
            "error": self.error,
            "rollback_error": self.rollback_error,
            "log": [entry.to_dict() for entry in self.log],
        }
