"""SSH utilities for deploy-guardian."""

from .credentials import SSHCredentials
from .session import SSHCommandResult, SSHConnectionError, SSHSession
from .executor import RemoteExecutor, strip_ssh_noise

__all__ = [
    "SSHCredentials",
    "SSHCommandResult",
    "SSHConnectionError",
    "SSHSession",
    "RemoteExecutor",
    "strip_ssh_noise",
]
