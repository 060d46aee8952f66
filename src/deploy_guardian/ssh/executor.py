"""Remote command execution with bounded timeouts."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional, TYPE_CHECKING

import paramiko

from ..errors import (
    CancelledError,
    ConfigurationError,
    ExecError,
    OperationTimeoutError,
    classify_failure,
)
from .credentials import SSHCredentials
from .session import SSHCommandResult, SSHConnectionError, SSHSession

if TYPE_CHECKING:
    from ..registry import EnvironmentRegistry

logger = logging.getLogger(__name__)

# OpenSSH / paramiko chatter that does not indicate a failure
_BENIGN_PREFIXES = (
    "Warning: Permanently added",
    "Pseudo-terminal will not be allocated",
)

SessionFactory = Callable[[SSHCredentials], SSHSession]


def strip_ssh_noise(stderr: str) -> str:
    """Remove benign connection banners from stderr."""
    lines = [line for line in (stderr or "").splitlines() if line.strip()]
    kept = [line for line in lines if not line.strip().startswith(_BENIGN_PREFIXES)]
    return "\n".join(kept)


class RemoteExecutor:
    """Runs shell commands on configured hosts.

    Does not retry: retries and recovery live in the guardian layer.
    """

    default_timeout = 30.0

    def __init__(
        self,
        registry: "EnvironmentRegistry",
        *,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.registry = registry
        self._session_factory = session_factory or SSHSession
        self._sessions: Dict[str, SSHSession] = {}
        self._lock = threading.Lock()

    def execute(
        self,
        target: str,
        command: str,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SSHCommandResult:
        """Run ``command`` on ``target`` (environment name or host address).

        Raises:
            OperationTimeoutError: the command did not finish within ``timeout``.
            CancelledError: ``cancel_event`` was set while waiting.
            ExecError: non-zero exit status or a failed shell channel.
        """
        timeout = timeout or self.default_timeout
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError(f"Cancelled before running: {command}")

        credentials = self.registry.credentials_for(target)
        logger.debug("[%s] $ %s", credentials.host, command)

        session = self._session(credentials)
        try:
            result = session.run(command, timeout=timeout, cancel_event=cancel_event)
        except (SSHConnectionError, paramiko.SSHException, OSError) as exc:
            self.drop(target)
            raise ExecError(command, -1, str(exc), kind=classify_failure(str(exc))) from exc

        if result.cancelled:
            raise CancelledError(f"Cancelled while running: {command}")
        if result.timed_out:
            raise OperationTimeoutError(
                f"Command timed out after {timeout}s on {credentials.host}: {command}",
                timeout=timeout,
            )

        stderr = strip_ssh_noise(result.stderr)
        banner_only = result.exit_status == 255 and not stderr and bool(result.stderr)
        if result.exit_status != 0 and not banner_only:
            raise ExecError(command, result.exit_status, stderr)

        return SSHCommandResult(
            command=command,
            stdout=result.stdout,
            stderr=stderr,
            exit_status=0 if banner_only else result.exit_status,
        )

    def check(self, target: str, command: str, **kwargs) -> str:
        """Run a command and return its stripped stdout."""
        return self.execute(target, command, **kwargs).stdout.strip()

    def drop(self, target: str) -> None:
        """Forget the cached session for ``target`` (e.g. after a host restart)."""
        try:
            host = self.registry.credentials_for(target).host
        except ConfigurationError:
            host = target
        with self._lock:
            session = self._sessions.pop(host, None)
        if session is not None:
            session.close()

    def close(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def _session(self, credentials: SSHCredentials) -> SSHSession:
        with self._lock:
            session = self._sessions.get(credentials.host)
            if session is None:
                session = self._session_factory(credentials)
                self._sessions[credentials.host] = session
            return session
