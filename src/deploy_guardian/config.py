"""Configuration loading utilities for deploy-guardian."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

# Load .env file if it exists
load_dotenv()

_DEFAULT_CONFIG_PATH = Path("config/default_config.json")


def _strip_comments(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys starting with an underscore (used as inline comments)."""
    return {k: v for k, v in (payload or {}).items() if not k.startswith("_")}


class _KeepUnknown(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_command(template: str, **values: Any) -> str:
    """Fill ``{port}``/``{name}``/``{path}`` placeholders in a shell command.

    Unknown names are left as written, so shell expansions such as
    ``${PORT}`` survive. Positional or malformed fields raise
    ConfigurationError.
    """
    try:
        return template.format_map(_KeepUnknown(values))
    except (IndexError, KeyError, ValueError) as exc:
        raise ConfigurationError(f"Invalid command template {template!r}: {exc}") from exc


def _merge(cls, section: str, payload: Dict[str, Any]):
    unknown = sorted(set(payload) - set(cls.__dataclass_fields__))
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in '{section}' section: {', '.join(unknown)}"
        )
    return cls(**{**cls().__dict__, **payload})


@dataclass
class ProjectConfig:
    """The application being deployed."""

    name: str = "app"
    repository_path: str = "."
    critical_files: List[str] = field(default_factory=list)
    start_command: str = "npm run dev -- --port {port}"
    build_command: Optional[str] = None
    cache_dirs: List[str] = field(default_factory=lambda: [".next", "node_modules/.cache"])


@dataclass
class LoginTestConfig:
    """Login smoke test run by ``guardian test``.

    Skipped unless both credentials are set, either here or through
    ``DEPLOY_GUARDIAN_LOGIN_EMAIL`` / ``DEPLOY_GUARDIAN_LOGIN_PASSWORD``.
    """

    login_route: str = "/api/auth/login"
    dashboard_route: str = "/dashboard"
    email: Optional[str] = None
    password: Optional[str] = None
    success_field: str = "success"
    base_url: Optional[str] = None  # defaults to http://<host>:<port>

    @property
    def enabled(self) -> bool:
        return bool(self.email and self.password)


@dataclass
class GuardianConfig:
    """Deadlock detection and recovery thresholds."""

    attempt_threshold: int = 3
    deadlock_window: float = 60.0        # seconds since first attempt
    force_recovery_after: float = 120.0  # seconds since last success
    operation_timeout: float = 30.0
    ready_timeout: float = 120.0
    ready_poll_interval: float = 5.0
    problem_processes: List[str] = field(default_factory=lambda: ["next-server", "npm start"])


@dataclass
class DeploymentSettings:
    """Settings related to the deploy pipeline."""

    pass_threshold: float = 0.75
    settle_delay: float = 8.0
    command_timeout: float = 30.0
    build_timeout: float = 300.0
    sync_timeout: float = 300.0
    deploy_timeout: float = 120.0
    validate_timeout: float = 60.0
    lock_timeout: float = 5.0
    probe_timeout: float = 10.0


@dataclass
class InfrastructureConfig:
    """Hypervisor host used for container-level force recovery."""

    host: Optional[str] = None
    username: str = "root"
    port: int = 22
    key_path: Optional[str] = None
    password: Optional[str] = None
    restart_command: str = "pct stop {container} && sleep 5 && pct start {container}"


@dataclass(frozen=True)
class EndpointConfig:
    """A health probe route.

    ``expected_status`` may be an exact code (``"200"``), a class
    (``"2xx"``) or ``None`` for any 2xx/3xx response.
    """

    name: str
    route: str = "/"
    expected_status: Optional[str] = None
    port: Optional[int] = None

    def matches(self, status_code: int) -> bool:
        expected = self.expected_status
        if expected is None:
            return 200 <= status_code < 400
        expected = str(expected).strip().lower()
        if expected.endswith("xx"):
            return str(status_code).startswith(expected[:-2])
        return str(status_code) == expected

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "EndpointConfig":
        payload = _strip_comments(payload)
        expected = payload.get("expected_status")
        return cls(
            name=payload.get("name") or payload.get("route", "/"),
            route=payload.get("route", "/"),
            expected_status=str(expected) if expected is not None else None,
            port=payload.get("port"),
        )


@dataclass(frozen=True)
class EnvironmentConfig:
    """A named deployable target."""

    name: str
    host: str
    path: str
    ports: tuple = (3001,)
    username: Optional[str] = None
    ssh_port: int = 22
    key_path: Optional[str] = None
    password: Optional[str] = None
    process_pattern: Optional[str] = None
    container: Optional[str] = None
    log_file: Optional[str] = None
    start_command: Optional[str] = None
    probe_via: str = "http"
    endpoints: tuple = ()

    @property
    def port(self) -> int:
        return self.ports[0]

    @property
    def match_pattern(self) -> str:
        return self.process_pattern or f"next.*{self.port}"

    @classmethod
    def from_dict(cls, name: str, payload: Dict[str, Any]) -> "EnvironmentConfig":
        payload = _strip_comments(payload)
        missing = [key for key in ("host", "path") if not payload.get(key)]
        if missing:
            raise ConfigurationError(
                f"Environment '{name}' is missing: {', '.join(missing)}"
            )
        ports = payload.get("ports") or ([payload["port"]] if payload.get("port") else [3001])
        if payload.get("probe_via", "http") not in ("http", "ssh"):
            raise ConfigurationError(
                f"Environment '{name}': probe_via must be 'http' or 'ssh'"
            )
        container = payload.get("container")
        if payload.get("start_command"):
            render_command(payload["start_command"], port=ports[0], name=name, path=payload["path"])
        return cls(
            name=name,
            host=payload["host"],
            path=payload["path"],
            ports=tuple(int(p) for p in ports),
            username=payload.get("username"),
            ssh_port=int(payload.get("ssh_port", 22)),
            key_path=payload.get("key_path"),
            password=payload.get("password"),
            process_pattern=payload.get("process_pattern"),
            container=str(container) if container is not None else None,
            log_file=payload.get("log_file"),
            start_command=payload.get("start_command"),
            probe_via=payload.get("probe_via", "http"),
            endpoints=tuple(
                EndpointConfig.from_dict(item) for item in payload.get("endpoints", [])
            ),
        )


@dataclass
class AppConfig:
    """Top-level configuration."""

    project: ProjectConfig = field(default_factory=ProjectConfig)
    guardian: GuardianConfig = field(default_factory=GuardianConfig)
    deployment: DeploymentSettings = field(default_factory=DeploymentSettings)
    infrastructure: InfrastructureConfig = field(default_factory=InfrastructureConfig)
    login_test: LoginTestConfig = field(default_factory=LoginTestConfig)
    environments: Dict[str, EnvironmentConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        if not isinstance(payload, dict):
            raise ConfigurationError("Configuration root must be a JSON object")
        project_payload = _strip_comments(payload.get("project", {}))
        guardian_payload = _strip_comments(payload.get("guardian", {}))
        deployment_payload = _strip_comments(payload.get("deployment", {}))
        infrastructure_payload = _strip_comments(payload.get("infrastructure", {}))
        login_payload = _strip_comments(payload.get("login_test", {}))
        environments_payload = _strip_comments(payload.get("environments", {}))

        project = _merge(ProjectConfig, "project", project_payload)
        for template in (project.start_command, project.build_command):
            if template:
                render_command(template, port=3001, name="check", path=".")

        return cls(
            project=project,
            guardian=_merge(GuardianConfig, "guardian", guardian_payload),
            deployment=_merge(DeploymentSettings, "deployment", deployment_payload),
            infrastructure=_merge(InfrastructureConfig, "infrastructure", infrastructure_payload),
            login_test=_merge(LoginTestConfig, "login_test", login_payload),
            environments={
                name: EnvironmentConfig.from_dict(name, env_payload)
                for name, env_payload in environments_payload.items()
            },
        )


def _apply_env_overrides(config: AppConfig) -> AppConfig:
    """Fill SSH identity and login-test credential gaps from environment variables."""
    login = config.login_test
    login.email = login.email or os.getenv("DEPLOY_GUARDIAN_LOGIN_EMAIL")
    login.password = login.password or os.getenv("DEPLOY_GUARDIAN_LOGIN_PASSWORD")

    env_username = os.getenv("DEPLOY_GUARDIAN_SSH_USERNAME")
    env_key_path = os.getenv("DEPLOY_GUARDIAN_SSH_KEY_PATH")
    if not (env_username or env_key_path):
        return config

    updated = {}
    for name, env in config.environments.items():
        changes = {}
        if env_key_path and not env.key_path and not env.password:
            changes["key_path"] = env_key_path
        if env_username and not env.username:
            changes["username"] = env_username
        updated[name] = replace(env, **changes) if changes else env
    config.environments = updated

    if env_key_path and not config.infrastructure.key_path and not config.infrastructure.password:
        config.infrastructure.key_path = env_key_path
    return config


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from `path` or the default locations.

    Lookup order: explicit path, ``$DEPLOY_GUARDIAN_CONFIG``, then
    ``config/default_config.json``.

    Environment variables (applied where the file leaves a value unset):
    - DEPLOY_GUARDIAN_SSH_USERNAME: SSH user for all environments
    - DEPLOY_GUARDIAN_SSH_KEY_PATH: Path to SSH private key
    - DEPLOY_GUARDIAN_LOGIN_EMAIL / DEPLOY_GUARDIAN_LOGIN_PASSWORD: login test credentials
    """

    candidate_paths = []
    if path:
        candidate_paths.append(Path(path))
    env_path = os.getenv("DEPLOY_GUARDIAN_CONFIG")
    if env_path:
        candidate_paths.append(Path(env_path))
    candidate_paths.append(_DEFAULT_CONFIG_PATH)

    for candidate in candidate_paths:
        if candidate.is_file():
            with candidate.open("r", encoding="utf-8") as handle:
                try:
                    data = json.load(handle)
                except json.JSONDecodeError as exc:
                    raise ConfigurationError(f"Malformed JSON in {candidate}: {exc}") from exc
            try:
                config = AppConfig.from_dict(data)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid configuration in {candidate}: {exc}") from exc
            return _apply_env_overrides(config)

    raise FileNotFoundError(
        f"Could not find configuration file. Looked in: {', '.join(str(p) for p in candidate_paths)}"
    )
