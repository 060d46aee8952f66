"""Guarded execution: deadlock detection, timeouts and recovery around one call."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, Optional, TypeVar

from ..errors import CancelledError, DeadlockError, FatalError, GuardianError, OperationTimeoutError
from ..utils.audit import AuditLog
from .detector import DeadlockDetector
from .models import AttemptKey, DeadlockStatus, GuardState, RecoveryAction
from .recovery import RecoveryCoordinator

logger = logging.getLogger(__name__)

T = TypeVar("T")

# An action receives a per-call cancel event, set on timeout or caller cancellation.
GuardedAction = Callable[[threading.Event], T]


class Guardian:
    """Wraps externally visible operations.

    Before each call the detector evaluates the (operation, target) history;
    after a failure the recovery coordinator picks a strategy from the
    error's FailureKind. The original error is always re-raised.
    """

    poll_interval = 0.1

    def __init__(
        self,
        detector: DeadlockDetector,
        recovery: RecoveryCoordinator,
        *,
        operation_timeout: float = 30.0,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.detector = detector
        self.recovery = recovery
        self.operation_timeout = operation_timeout
        self.audit = audit or AuditLog(enabled=False)
        # Latest soft-deadlock warning per key; callers pop it into their own log.
        self.deadlock_warnings: Dict[AttemptKey, DeadlockError] = {}

    def guard(
        self,
        operation: str,
        target: str,
        action: GuardedAction,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        key = AttemptKey(operation, target)
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError(f"{key} cancelled before start")

        logger.info("Guardian: executing %s on %s", operation, target)
        status = self.detector.record_attempt(key)
        try:
            if status.is_deadlock:
                self._on_deadlock(key, status, cancel_event)
            try:
                result = self._run_with_timeout(key, action, timeout, cancel_event)
            except CancelledError:
                raise
            except Exception as exc:
                self._on_failure(key, exc, cancel_event)
                raise
        except CancelledError:
            self.detector.withdraw(key)
            self.audit.record(str(key), "guard", "cancelled")
            raise

        self.detector.record_success(key)
        self.audit.record(str(key), "guard", "success", attempts=status.attempt_count)
        return result

    def take_warning(self, operation: str, target: str) -> Optional[DeadlockError]:
        return self.deadlock_warnings.pop(AttemptKey(operation, target), None)

    def _on_deadlock(
        self,
        key: AttemptKey,
        status: DeadlockStatus,
        cancel_event: Optional[threading.Event],
    ) -> None:
        warning = DeadlockError(key.operation, key.target, status)
        logger.warning(
            "Deadlock detected for %s (attempts: %d, time since first: %ds)",
            key,
            status.attempt_count,
            round(status.time_since_first),
        )
        if status.needs_force_recovery:
            self._force_recover(key, cancel_event)
        else:
            # Soft warning: the attempt still runs once more.
            self.deadlock_warnings[key] = warning
            self.detector.transition(key, GuardState.ATTEMPTING, soft_deadlock=True)

    def _on_failure(
        self,
        key: AttemptKey,
        error: BaseException,
        cancel_event: Optional[threading.Event],
    ) -> None:
        kind = error.kind.value if isinstance(error, GuardianError) else "other"
        logger.error("%s failed: %s", key, error)
        self.audit.record(str(key), "guard", "failure", error=str(error), kind=kind)
        if isinstance(error, FatalError):
            return
        if self.recovery.dispatch(key.target, error, cancel_event) is RecoveryAction.FORCE_RECOVERY:
            self._force_recover(key, cancel_event)

    def _force_recover(self, key: AttemptKey, cancel_event: Optional[threading.Event]) -> None:
        self.detector.transition(key, GuardState.FORCE_RECOVERING)
        self.audit.record(str(key), "force_recovery", "started")
        try:
            self.recovery.force_recover(key.target, cancel_event)
        except FatalError as exc:
            self.detector.transition(key, GuardState.ATTEMPTING, force_recovery="failed")
            self.audit.record(str(key), "force_recovery", "failed", error=str(exc))
            raise
        self.detector.transition(key, GuardState.ATTEMPTING, force_recovery="completed")
        self.audit.record(str(key), "force_recovery", "completed")

    def _run_with_timeout(
        self,
        key: AttemptKey,
        action: GuardedAction,
        timeout: Optional[float],
        cancel_event: Optional[threading.Event],
    ):
        timeout = timeout or self.operation_timeout
        call_cancel = threading.Event()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"guard-{key}")
        future = pool.submit(action, call_cancel)
        deadline = time.monotonic() + timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    call_cancel.set()
                    raise OperationTimeoutError(
                        f"{key} timed out after {timeout}s", timeout=timeout
                    )
                wait([future], timeout=min(remaining, self.poll_interval))
                if future.done():
                    return future.result()
                if cancel_event is not None and cancel_event.is_set():
                    call_cancel.set()
                    raise CancelledError(f"{key} cancelled by caller")
        finally:
            pool.shutdown(wait=False)
