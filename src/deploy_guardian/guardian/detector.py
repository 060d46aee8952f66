"""Deadlock detection over repeated (operation, target) attempts."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from ..utils.audit import AuditLog
from .models import TRANSITIONS, AttemptKey, AttemptRecord, DeadlockStatus, GuardState

logger = logging.getLogger(__name__)


class DeadlockDetector:
    """Owns the attempt and last-success maps for one orchestrator process.

    A key is deadlocked once its attempt count reaches ``attempt_threshold``
    and more than ``deadlock_window`` seconds have passed since the first
    attempt of the current streak. Force recovery additionally requires
    ``force_recovery_after`` seconds without a success; a key that has
    never succeeded counts as stale.

    State is process-local and lost on restart.
    """

    def __init__(
        self,
        *,
        attempt_threshold: int = 3,
        deadlock_window: float = 60.0,
        force_recovery_after: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.attempt_threshold = attempt_threshold
        self.deadlock_window = deadlock_window
        self.force_recovery_after = force_recovery_after
        self.clock = clock
        self.audit = audit
        self._attempts: Dict[AttemptKey, AttemptRecord] = {}
        self._last_success: Dict[AttemptKey, float] = {}
        self._states: Dict[AttemptKey, GuardState] = {}
        self._lock = threading.RLock()

    # ----- queries -----

    def state_of(self, key: AttemptKey) -> GuardState:
        with self._lock:
            return self._states.get(key, GuardState.IDLE)

    def attempts(self, key: AttemptKey) -> Optional[AttemptRecord]:
        with self._lock:
            record = self._attempts.get(key)
            return AttemptRecord(record.count, record.first_attempt) if record else None

    def last_success(self, key: AttemptKey) -> Optional[float]:
        with self._lock:
            return self._last_success.get(key)

    # ----- mutations -----

    def record_attempt(self, key: AttemptKey) -> DeadlockStatus:
        """Count one invocation and evaluate the deadlock condition before it runs."""
        with self._lock:
            now = self.clock()
            record = self._attempts.get(key)
            if record is None:
                record = AttemptRecord(count=0, first_attempt=now)
                self._attempts[key] = record
            record.count += 1

            time_since_first = now - record.first_attempt
            last = self._last_success.get(key)
            time_since_last_success = None if last is None else now - last

            is_deadlock = (
                record.count >= self.attempt_threshold
                and time_since_first > self.deadlock_window
            )
            stale = (
                time_since_last_success is None
                or time_since_last_success > self.force_recovery_after
            )
            status = DeadlockStatus(
                is_deadlock=is_deadlock,
                needs_force_recovery=is_deadlock and stale,
                attempt_count=record.count,
                time_since_first=time_since_first,
                time_since_last_success=time_since_last_success,
            )
            self.transition(key, GuardState.ATTEMPTING)
            if is_deadlock:
                self.transition(key, GuardState.DEADLOCKED, **status.to_dict())
            return status

    def record_success(self, key: AttemptKey) -> None:
        with self._lock:
            self._attempts.pop(key, None)
            self._last_success[key] = self.clock()
            self.transition(key, GuardState.SUCCEEDED)
            self.transition(key, GuardState.IDLE)

    def withdraw(self, key: AttemptKey) -> None:
        """Undo the attempt counted for a cancelled invocation."""
        with self._lock:
            record = self._attempts.get(key)
            if record is not None:
                record.count -= 1
                if record.count <= 0:
                    del self._attempts[key]
            remaining = key in self._attempts
            target = GuardState.ATTEMPTING if remaining else GuardState.IDLE
            if self.state_of(key) is not target:
                self.transition(key, target, reason="cancelled")

    def transition(self, key: AttemptKey, new_state: GuardState, **details) -> None:
        with self._lock:
            current = self._states.get(key, GuardState.IDLE)
            if new_state not in TRANSITIONS[current]:
                raise RuntimeError(
                    f"Illegal guard transition for {key}: {current.value} -> {new_state.value}"
                )
            if new_state is GuardState.IDLE:
                self._states.pop(key, None)
            else:
                self._states[key] = new_state
        logger.debug("Guard %s: %s -> %s", key, current.value, new_state.value)
        if self.audit is not None and current is not new_state:
            self.audit.record(str(key), "transition", new_state.value, previous=current.value, **details)
