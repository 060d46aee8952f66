"""SSH session management built on Paramiko."""

from __future__ import annotations

import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import paramiko

from .credentials import SSHCredentials

TIMEOUT_EXIT_STATUS = -2
CANCELLED_EXIT_STATUS = -3


class SSHConnectionError(RuntimeError):
    """Raised when an SSH connection cannot be established."""

    pass


@dataclass
class SSHCommandResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def timed_out(self) -> bool:
        return self.exit_status == TIMEOUT_EXIT_STATUS

    @property
    def cancelled(self) -> bool:
        return self.exit_status == CANCELLED_EXIT_STATUS


class SSHSession:
    """High-level wrapper around paramiko.SSHClient."""

    poll_interval = 0.1

    def __init__(
        self,
        credentials: SSHCredentials,
        *,
        client_factory: Callable[[], paramiko.SSHClient] | None = None,
    ) -> None:
        self.credentials = credentials
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def __enter__(self) -> "SSHSession":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        with self._lock:
            if self._client:
                return
            self.credentials.validate()
            client = self._client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                connect_kwargs = {
                    "hostname": self.credentials.host,
                    "port": self.credentials.port,
                    "username": self.credentials.username,
                    "timeout": self.credentials.timeout,
                    "banner_timeout": self.credentials.timeout,
                }
                if self.credentials.auth_method == "password":
                    connect_kwargs["password"] = self.credentials.password
                    connect_kwargs["look_for_keys"] = False
                    connect_kwargs["allow_agent"] = False
                elif self.credentials.auth_method == "key":
                    connect_kwargs["key_filename"] = self.credentials.key_path
                    if self.credentials.passphrase:
                        connect_kwargs["passphrase"] = self.credentials.passphrase
                client.connect(**connect_kwargs)
            except Exception as exc:  # pragma: no cover - network errors hard to simulate
                client.close()
                raise SSHConnectionError(str(exc)) from exc
            self._client = client

    def close(self) -> None:
        with self._lock:
            if self._client:
                self._client.close()
                self._client = None

    def run(
        self,
        command: str,
        *,
        timeout: float = 30.0,
        cancel_event: Optional[threading.Event] = None,
    ) -> SSHCommandResult:
        """
        Execute a command on the remote server.

        Args:
            command: The shell command to execute
            timeout: Total timeout in seconds
            cancel_event: When set, the channel is closed and the result is
                marked as cancelled

        Returns:
            SSHCommandResult with command output and exit status. Timeouts
            and cancellation are reported through ``exit_status``
            (``TIMEOUT_EXIT_STATUS`` / ``CANCELLED_EXIT_STATUS``).
        """
        if not self._client:
            self.connect()
        assert self._client is not None

        try:
            _, stdout, stderr = self._client.exec_command(command, timeout=timeout)
        except (paramiko.SSHException, socket.error) as exc:
            self.close()
            raise SSHConnectionError(str(exc)) from exc

        channel = stdout.channel
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        start_time = time.monotonic()

        while not channel.exit_status_ready():
            self._drain(channel, stdout_chunks, stderr_chunks)

            if cancel_event is not None and cancel_event.is_set():
                channel.close()
                return SSHCommandResult(
                    command=command,
                    stdout="".join(stdout_chunks).strip(),
                    stderr="CANCELLED: command withdrawn by caller",
                    exit_status=CANCELLED_EXIT_STATUS,
                )

            if time.monotonic() - start_time > timeout:
                channel.close()
                return SSHCommandResult(
                    command=command,
                    stdout="".join(stdout_chunks).strip(),
                    stderr=f"TIMEOUT: Command did not complete within {timeout} seconds.",
                    exit_status=TIMEOUT_EXIT_STATUS,
                )

            time.sleep(self.poll_interval)

        self._drain(channel, stdout_chunks, stderr_chunks)
        exit_status = channel.recv_exit_status()

        return SSHCommandResult(
            command=command,
            stdout="".join(stdout_chunks).strip(),
            stderr="".join(stderr_chunks).strip(),
            exit_status=exit_status,
        )

    @staticmethod
    def _drain(channel, stdout_chunks: list[str], stderr_chunks: list[str]) -> None:
        while channel.recv_ready():
            stdout_chunks.append(channel.recv(4096).decode("utf-8", errors="replace"))
        while channel.recv_stderr_ready():
            stderr_chunks.append(channel.recv_stderr(4096).decode("utf-8", errors="replace"))
