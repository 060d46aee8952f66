"""High-level workflow: wires components from configuration and exposes CLI operations."""

from __future__ import annotations

import threading
from typing import Dict, Optional

from .config import AppConfig, EnvironmentConfig
from .errors import ValidationError
from .gitops import LocalRepository
from .guardian import DeadlockDetector, Guardian, RecoveryCoordinator
from .health import (
    HealthValidator,
    HttpProbe,
    LoginCheck,
    LoginResult,
    RemoteCurlProbe,
    ValidationResult,
)
from .orchestrator import DeploymentOrchestrator, DeploymentRun, DeployOptions, RunStore
from .process import ProcessLaunch, ProcessManager, RestartOptions
from .registry import EnvironmentRegistry
from .ssh import RemoteExecutor
from .sync import RepositorySynchronizer
from .utils.audit import AuditLog
from .utils.logging import get_logger

logger = get_logger(__name__)


class GuardianWorkflow:
    """Builds one set of collaborators per process.

    The detector lives as long as this object, so attempt history is shared
    by every operation started through it.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        executor: Optional[RemoteExecutor] = None,
        validator: Optional[HealthValidator] = None,
        login_check: Optional[LoginCheck] = None,
        audit: Optional[AuditLog] = None,
        run_store: Optional[RunStore] = None,
    ) -> None:
        self.config = config
        self.audit = audit or AuditLog()
        self.registry = EnvironmentRegistry.from_config(config)
        settings = config.deployment

        self.executor = executor or RemoteExecutor(self.registry)
        self.executor.default_timeout = settings.command_timeout
        self.local_repository = LocalRepository(config.project.repository_path)
        self.synchronizer = RepositorySynchronizer(
            self.executor,
            local_repository=self.local_repository,
            critical_files=config.project.critical_files,
            command_timeout=settings.command_timeout,
            fetch_timeout=settings.sync_timeout,
        )
        self.process_manager = ProcessManager(
            self.executor,
            project_name=config.project.name,
            start_command=config.project.start_command,
            build_command=config.project.build_command,
            cache_dirs=config.project.cache_dirs,
            settle_delay=settings.settle_delay,
            command_timeout=settings.command_timeout,
            build_timeout=settings.build_timeout,
        )
        self.validator = validator or HealthValidator(
            http_probe=HttpProbe(timeout=settings.probe_timeout),
            ssh_probe=RemoteCurlProbe(self.executor, timeout=settings.probe_timeout),
            pass_threshold=settings.pass_threshold,
        )
        self.login_check = login_check or LoginCheck(config.login_test, timeout=settings.probe_timeout)

        guardian_config = config.guardian
        self.detector = DeadlockDetector(
            attempt_threshold=guardian_config.attempt_threshold,
            deadlock_window=guardian_config.deadlock_window,
            force_recovery_after=guardian_config.force_recovery_after,
            audit=self.audit,
        )
        self.recovery = RecoveryCoordinator(
            self.registry,
            self.executor,
            self.process_manager,
            restart_command=config.infrastructure.restart_command,
            problem_processes=guardian_config.problem_processes,
            ready_timeout=guardian_config.ready_timeout,
            ready_poll_interval=guardian_config.ready_poll_interval,
        )
        self.guardian = Guardian(
            self.detector,
            self.recovery,
            operation_timeout=guardian_config.operation_timeout,
            audit=self.audit,
        )
        self.run_store = run_store or RunStore()
        self.orchestrator = DeploymentOrchestrator(
            self.registry,
            self.guardian,
            self.synchronizer,
            self.process_manager,
            self.validator,
            self.local_repository,
            settings=settings,
            run_store=self.run_store,
            audit=self.audit,
        )

    def close(self) -> None:
        self.executor.close()

    # ----- operations -----

    def run_deploy(
        self,
        environment: str,
        options: Optional[DeployOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DeploymentRun:
        return self.orchestrator.deploy(environment, options, cancel_event)

    def guarded_start(
        self, target: str, cancel_event: Optional[threading.Event] = None
    ) -> ValidationResult:
        """Restart the application and require a healthy verdict, under key ``app-start``.

        Holds the target lock, so it never interleaves with a deployment.
        """
        env = self.registry.get(target)
        settings = self.config.deployment
        timeout = settings.deploy_timeout + settings.validate_timeout
        if self.process_manager.build_command:
            timeout += settings.build_timeout
        with self.orchestrator.locks.hold(env.name, settings.lock_timeout):
            return self.guardian.guard(
                "app-start",
                env.name,
                lambda cancel: self._start_and_validate(env, cancel),
                timeout=timeout,
                cancel_event=cancel_event,
            )

    def guarded_smoke_test(
        self, target: str, cancel_event: Optional[threading.Event] = None
    ) -> ValidationResult:
        env = self.registry.get(target)
        return self.guardian.guard(
            "smoke-test",
            env.name,
            lambda cancel: self._require_healthy(env, cancel),
            timeout=self.config.deployment.validate_timeout,
            cancel_event=cancel_event,
        )

    @property
    def login_test_enabled(self) -> bool:
        return self.login_check.config.enabled

    def guarded_login_test(
        self, target: str, cancel_event: Optional[threading.Event] = None
    ) -> LoginResult:
        """Log in and open the dashboard, under key ``login-test``."""
        env = self.registry.get(target)
        return self.guardian.guard(
            "login-test",
            env.name,
            lambda cancel: self.login_check.run(env),
            timeout=self.config.deployment.validate_timeout,
            cancel_event=cancel_event,
        )

    def health_check(
        self, target: str, cancel_event: Optional[threading.Event] = None
    ) -> ValidationResult:
        """Unguarded probe; never raises for unhealthy endpoints."""
        return self.validator.validate(self.registry.get(target), cancel_event=cancel_event)

    def status(self, cancel_event: Optional[threading.Event] = None) -> Dict[str, ValidationResult]:
        return {
            env.name: self.validator.validate(env, cancel_event=cancel_event)
            for env in self.registry
        }

    def _start_and_validate(
        self, env: EnvironmentConfig, cancel_event: threading.Event
    ) -> ValidationResult:
        launch: ProcessLaunch = self.process_manager.restart(
            env, RestartOptions(), cancel_event=cancel_event
        )
        logger.info("[%s] Application launched, log: %s", env.name, launch.log_file)
        return self._require_healthy(env, cancel_event)

    def _require_healthy(
        self, env: EnvironmentConfig, cancel_event: threading.Event
    ) -> ValidationResult:
        result = self.validator.validate(env, cancel_event=cancel_event)
        if not result.healthy:
            raise ValidationError(result)
        return result
