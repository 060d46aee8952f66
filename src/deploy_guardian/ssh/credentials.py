"""SSH credential helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SSHCredentials:
    """Normalized SSH identity for one host."""

    host: str
    username: str = "root"
    port: int = 22
    auth_method: str = "agent"
    password: Optional[str] = None
    key_path: Optional[str] = None
    passphrase: Optional[str] = None
    timeout: int = 10

    @classmethod
    def build(
        cls,
        host: str,
        *,
        username: Optional[str] = None,
        port: int = 22,
        key_path: Optional[str] = None,
        password: Optional[str] = None,
    ) -> "SSHCredentials":
        if key_path:
            auth_method = "key"
        elif password:
            auth_method = "password"
        else:
            auth_method = "agent"
        return cls(
            host=host,
            username=username or "root",
            port=port,
            auth_method=auth_method,
            password=password,
            key_path=key_path,
        )

    def validate(self) -> None:
        if self.auth_method == "password" and not self.password:
            raise ValueError("Password authentication selected but no password provided")
        if self.auth_method == "key" and not self.key_path:
            raise ValueError("Key authentication selected but no key_path provided")
