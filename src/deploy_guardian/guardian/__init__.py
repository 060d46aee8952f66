"""Deadlock detection and recovery coordination."""

from .models import (
    AttemptKey,
    AttemptRecord,
    DeadlockStatus,
    GuardState,
    RecoveryAction,
    TRANSITIONS,
)
from .detector import DeadlockDetector
from .recovery import RecoveryCoordinator, ping
from .guardian import Guardian

__all__ = [
    "AttemptKey",
    "AttemptRecord",
    "DeadlockStatus",
    "GuardState",
    "RecoveryAction",
    "TRANSITIONS",
    "DeadlockDetector",
    "RecoveryCoordinator",
    "ping",
    "Guardian",
]
