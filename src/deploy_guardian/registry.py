"""Environment registry: name -> deployable target."""

from __future__ import annotations

from typing import Dict, Iterator, Mapping, Optional

from .config import AppConfig, EnvironmentConfig, InfrastructureConfig
from .errors import ConfigurationError
from .ssh.credentials import SSHCredentials

INFRASTRUCTURE_TARGET = "infrastructure"


class EnvironmentRegistry:
    """Immutable view over the configured environments.

    Loaded once per run. Also resolves host addresses and the
    infrastructure (hypervisor) host to SSH credentials.
    """

    def __init__(
        self,
        environments: Mapping[str, EnvironmentConfig],
        infrastructure: Optional[InfrastructureConfig] = None,
    ) -> None:
        self._environments: Dict[str, EnvironmentConfig] = dict(environments)
        self._infrastructure = infrastructure or InfrastructureConfig()

    @classmethod
    def from_config(cls, config: AppConfig) -> "EnvironmentRegistry":
        return cls(config.environments, config.infrastructure)

    def __contains__(self, name: object) -> bool:
        return name in self._environments

    def __iter__(self) -> Iterator[EnvironmentConfig]:
        return iter(self._environments.values())

    def __len__(self) -> int:
        return len(self._environments)

    def names(self) -> list[str]:
        return list(self._environments)

    def get(self, name: str) -> EnvironmentConfig:
        try:
            return self._environments[name]
        except KeyError:
            known = ", ".join(sorted(self._environments)) or "none"
            raise ConfigurationError(
                f"Environment '{name}' not found in configuration (known: {known})"
            ) from None

    def find_by_host(self, host: str) -> Optional[EnvironmentConfig]:
        for env in self._environments.values():
            if env.host == host:
                return env
        return None

    def credentials_for(self, target: str) -> SSHCredentials:
        """Resolve an environment name, host address or the infrastructure host."""
        infra = self._infrastructure
        if target == INFRASTRUCTURE_TARGET or (infra.host and target == infra.host):
            if not infra.host:
                raise ConfigurationError("No infrastructure host configured")
            return SSHCredentials.build(
                infra.host,
                username=infra.username,
                port=infra.port,
                key_path=infra.key_path,
                password=infra.password,
            )

        env = self._environments.get(target) or self.find_by_host(target)
        if env is None:
            raise ConfigurationError(f"Host '{target}' does not resolve to a configured environment")
        return SSHCredentials.build(
            env.host,
            username=env.username,
            port=env.ssh_port,
            key_path=env.key_path,
            password=env.password,
        )
