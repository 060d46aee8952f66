"""Recovery strategies selected by failure signature."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Callable, Dict, Optional, Sequence

from ..errors import (
    CancelledError,
    ExecError,
    FailureKind,
    FatalError,
    GuardianError,
    OperationTimeoutError,
)
from ..process import ProcessManager
from ..registry import INFRASTRUCTURE_TARGET, EnvironmentRegistry
from ..ssh import RemoteExecutor
from .models import RecoveryAction

logger = logging.getLogger(__name__)

ResyncHook = Callable[[Optional[threading.Event]], object]


def ping(host: str, timeout: int = 5) -> bool:
    """Single ICMP echo via the system ping binary."""
    try:
        process = subprocess.run(
            ["ping", "-c", "1", "-W", str(timeout), host],
            capture_output=True,
            text=True,
            timeout=timeout + 5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("ping %s failed: %s", host, exc)
        return False
    return process.returncode == 0


class RecoveryCoordinator:
    """Remediation for failed guarded operations.

    Strategies attempt to fix the *next* attempt; they never suppress the
    failure that triggered them. Only force recovery can fail loudly, with
    a FatalError.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        executor: RemoteExecutor,
        process_manager: ProcessManager,
        *,
        restart_command: str = "pct stop {container} && sleep 5 && pct start {container}",
        problem_processes: Sequence[str] = ("next-server", "npm start"),
        ready_timeout: float = 120.0,
        ready_poll_interval: float = 5.0,
        restart_timeout: float = 120.0,
        pinger: Callable[[str], bool] = ping,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.process_manager = process_manager
        self.restart_command = restart_command
        self.problem_processes = list(problem_processes)
        self.ready_timeout = ready_timeout
        self.ready_poll_interval = ready_poll_interval
        self.restart_timeout = restart_timeout
        self.pinger = pinger
        self.clock = clock
        self._resync_hooks: Dict[str, ResyncHook] = {}
        self._strategies: Dict[FailureKind, Callable[[str, Optional[threading.Event]], RecoveryAction]] = {
            FailureKind.PORT_CONFLICT: self.recover_port_conflict,
            FailureKind.CONNECTION_REFUSED: self.recover_connection_issue,
            FailureKind.MISSING_ARTIFACT: self.recover_missing_artifacts,
        }

    def register_resync(self, target: str, hook: ResyncHook) -> None:
        self._resync_hooks[target] = hook

    def unregister_resync(self, target: str) -> None:
        self._resync_hooks.pop(target, None)

    def dispatch(
        self,
        target: str,
        error: BaseException,
        cancel_event: Optional[threading.Event] = None,
    ) -> RecoveryAction:
        kind = error.kind if isinstance(error, GuardianError) else FailureKind.OTHER
        strategy = self._strategies.get(kind)
        if strategy is None:
            logger.info("No recovery strategy for %s failure on %s", kind.value, target)
            return RecoveryAction.NONE
        logger.info("Recovering %s on %s", kind.value, target)
        return strategy(target, cancel_event)

    # ----- strategies -----

    def recover_port_conflict(
        self, target: str, cancel_event: Optional[threading.Event] = None
    ) -> RecoveryAction:
        try:
            env = self.registry.get(target)
            self.process_manager.kill_ports(env, self.problem_processes, cancel_event)
        except CancelledError:
            raise
        except GuardianError as exc:
            logger.error("Port recovery failed on %s: %s", target, exc)
        else:
            logger.info("Port conflict recovery completed on %s", target)
        return RecoveryAction.NONE

    def recover_connection_issue(
        self, target: str, cancel_event: Optional[threading.Event] = None
    ) -> RecoveryAction:
        try:
            host = self.registry.get(target).host
        except GuardianError as exc:
            logger.error("Connection recovery failed for %s: %s", target, exc)
            return RecoveryAction.NONE

        reachable = self.pinger(host)
        logger.info("Host %s %s", host, "is reachable" if reachable else "does not answer ping")

        self.executor.drop(target)
        try:
            self.executor.execute(target, "echo 'SSH OK'", timeout=10, cancel_event=cancel_event)
            shell_ok = True
        except CancelledError:
            raise
        except GuardianError as exc:
            shell_ok = False
            logger.warning("SSH to %s failed: %s", target, exc)

        if not reachable and not shell_ok:
            logger.error("%s unreachable by ping and SSH, escalating to force recovery", target)
            return RecoveryAction.FORCE_RECOVERY
        return RecoveryAction.NONE

    def recover_missing_artifacts(
        self, target: str, cancel_event: Optional[threading.Event] = None
    ) -> RecoveryAction:
        hook = self._resync_hooks.get(target)
        if hook is None:
            logger.warning("Missing artifacts on %s: redeploy required (no resync hook registered)", target)
            return RecoveryAction.NONE
        logger.info("Missing artifacts on %s, re-running repository sync", target)
        try:
            hook(cancel_event)
        except CancelledError:
            raise
        except GuardianError as exc:
            logger.error("Resync of %s failed: %s", target, exc)
        return RecoveryAction.NONE

    # ----- force recovery -----

    def force_recover(self, target: str, cancel_event: Optional[threading.Event] = None) -> None:
        """Restart the target's container from the infrastructure host, then wait for SSH."""
        try:
            env = self.registry.get(target)
            self.registry.credentials_for(INFRASTRUCTURE_TARGET)
        except GuardianError as exc:
            raise FatalError(f"Force recovery impossible for {target}: {exc}", causes=(exc,)) from exc
        if not env.container:
            raise FatalError(f"Force recovery impossible for {target}: no container configured")

        logger.warning("Force recovery: restarting container %s (%s)", env.container, target)
        command = self.restart_command.format(container=env.container)
        try:
            self.executor.execute(
                INFRASTRUCTURE_TARGET,
                command,
                timeout=self.restart_timeout,
                cancel_event=cancel_event,
            )
        except CancelledError:
            raise
        except GuardianError as exc:
            raise FatalError(f"Force recovery of {target} failed: {exc}", causes=(exc,)) from exc

        self.executor.drop(target)
        logger.info("Container %s restarted", env.container)
        self.wait_for_ready(target, cancel_event)

    def wait_for_ready(self, target: str, cancel_event: Optional[threading.Event] = None) -> None:
        logger.info("Waiting for %s to be ready...", target)
        waiter = cancel_event or threading.Event()
        started = self.clock()
        last_error: Optional[BaseException] = None

        while self.clock() - started < self.ready_timeout:
            try:
                self.executor.execute(target, "echo 'ready'", timeout=5, cancel_event=cancel_event)
                logger.info("%s is ready", target)
                return
            except (ExecError, OperationTimeoutError) as exc:
                last_error = exc
                self.executor.drop(target)
            if waiter.wait(self.ready_poll_interval):
                raise CancelledError(f"Cancelled while waiting for {target}")

        causes = (last_error,) if last_error else ()
        raise FatalError(
            f"{target} did not become ready within {self.ready_timeout:.0f}s",
            causes=causes,
        )
