"""Data models for the deadlock detector and recovery coordinator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple, Optional


class AttemptKey(NamedTuple):
    """(operation-kind, target) pair that retry state is tracked under."""

    operation: str
    target: str

    def __str__(self) -> str:
        return f"{self.operation}-{self.target}"


class GuardState(Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    DEADLOCKED = "deadlocked"
    FORCE_RECOVERING = "force_recovering"


# Every legal transition. Anything else is a bug and raises.
TRANSITIONS = {
    GuardState.IDLE: {GuardState.ATTEMPTING},
    GuardState.ATTEMPTING: {
        GuardState.ATTEMPTING,
        GuardState.SUCCEEDED,
        GuardState.DEADLOCKED,
        GuardState.FORCE_RECOVERING,  # connectivity escalation
        GuardState.IDLE,  # cancellation withdraws the attempt
    },
    GuardState.SUCCEEDED: {GuardState.IDLE},
    GuardState.DEADLOCKED: {
        GuardState.ATTEMPTING,  # soft warning, attempt proceeds
        GuardState.FORCE_RECOVERING,
        GuardState.IDLE,
    },
    GuardState.FORCE_RECOVERING: {GuardState.ATTEMPTING, GuardState.IDLE},
}


@dataclass
class AttemptRecord:
    count: int
    first_attempt: float


@dataclass(frozen=True)
class DeadlockStatus:
    """Detector verdict for one invocation, computed before it runs."""

    is_deadlock: bool
    needs_force_recovery: bool
    attempt_count: int
    time_since_first: float
    time_since_last_success: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "is_deadlock": self.is_deadlock,
            "needs_force_recovery": self.needs_force_recovery,
            "attempt_count": self.attempt_count,
            "time_since_first": round(self.time_since_first, 3),
            "time_since_last_success": (
                round(self.time_since_last_success, 3)
                if self.time_since_last_success is not None
                else None
            ),
        }


class RecoveryAction(Enum):
    """What a recovery strategy asks the coordinator to do next."""

    NONE = "none"
    FORCE_RECOVERY = "force_recovery"
