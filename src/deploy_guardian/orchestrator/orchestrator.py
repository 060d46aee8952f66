"""Deployment orchestrator: pre-check, sync, deploy, validate, optional rollback."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, TypeVar

from ..config import DeploymentSettings, EnvironmentConfig
from ..errors import CancelledError, FatalError, GuardianError, ValidationError
from ..gitops import GitCommandError, LocalRepository
from ..guardian import Guardian
from ..health import HealthValidator, ValidationResult
from ..process import ProcessManager, RestartOptions
from ..registry import EnvironmentRegistry
from ..sync import RepositorySynchronizer
from ..utils.audit import AuditLog
from .locks import TargetLocks
from .models import DeploymentRun, DeployOptions, Phase, RunOutcome
from .run_store import RunStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeploymentOrchestrator:
    """Runs one deployment pipeline per call, serialized per target.

    Every phase after pre-check goes through the guardian, so the
    orchestrator only ever sees the final outcome of each guarded call.
    ``deploy`` returns the run record on success and failure alike;
    only configuration and lock errors are raised before a run exists.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        guardian: Guardian,
        synchronizer: RepositorySynchronizer,
        process_manager: ProcessManager,
        validator: HealthValidator,
        local_repository: LocalRepository,
        *,
        settings: Optional[DeploymentSettings] = None,
        locks: Optional[TargetLocks] = None,
        run_store: Optional[RunStore] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.registry = registry
        self.guardian = guardian
        self.synchronizer = synchronizer
        self.process_manager = process_manager
        self.validator = validator
        self.local_repository = local_repository
        self.settings = settings or DeploymentSettings()
        self.locks = locks or TargetLocks()
        self.run_store = run_store
        self.audit = audit or AuditLog(enabled=False)

    def deploy(
        self,
        environment: str,
        options: Optional[DeployOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DeploymentRun:
        options = options or DeployOptions()
        env = self.registry.get(environment)

        with self.locks.hold(env.name, self.settings.lock_timeout):
            run = DeploymentRun(environment=env.name, options=options)
            logger.info("Starting deployment to %s: %s", env.name, options.reason)
            try:
                self._execute(run, env, cancel_event)
            finally:
                self.guardian.recovery.unregister_resync(env.name)
                if run.outcome is RunOutcome.RUNNING:
                    run.finish(RunOutcome.FAILED, run.error or "Deployment aborted")
                self.audit.record(
                    f"deploy-{env.name}",
                    "run",
                    run.outcome.value,
                    reason=options.reason,
                    error=run.error,
                )
                if self.run_store is not None:
                    self.run_store.save(run)
        return run

    def _execute(
        self,
        run: DeploymentRun,
        env: EnvironmentConfig,
        cancel_event: Optional[threading.Event],
    ) -> None:
        try:
            self._pre_check(run)
            self._register_resync(run, env)
            self._sync(run, env, cancel_event)
            self._deploy(run, env, cancel_event)
            self._validate(run, env, cancel_event)
        except CancelledError as exc:
            run.add_log(f"Deployment cancelled: {exc}", "warning")
            run.finish(RunOutcome.CANCELLED, str(exc))
            return
        except FatalError as exc:
            run.add_log(f"Fatal error: {exc}", "error")
            run.finish(RunOutcome.FATAL, str(exc))
            return
        except GuardianError as exc:
            self._phase_failed(run, env, exc, cancel_event)
            return
        except Exception as exc:
            logger.exception("Unexpected error in %s phase", run.phase.value)
            self._phase_failed(run, env, exc, cancel_event)
            return

        run.add_log(f"Deployment to {env.name} completed successfully")
        run.finish(RunOutcome.SUCCEEDED)

    def _phase_failed(
        self,
        run: DeploymentRun,
        env: EnvironmentConfig,
        error: Exception,
        cancel_event: Optional[threading.Event],
    ) -> None:
        run.add_log(f"{run.phase.value} failed: {error}", "error")
        run.error = str(error) or type(error).__name__
        if run.options.auto_rollback and run.phase is not Phase.PRE_CHECK:
            self._rollback(run, env, error, cancel_event)
        else:
            run.finish(RunOutcome.FAILED)

    def _guarded(
        self,
        run: DeploymentRun,
        operation: str,
        env: EnvironmentConfig,
        action: Callable[[threading.Event], T],
        timeout: float,
        cancel_event: Optional[threading.Event],
    ) -> T:
        try:
            return self.guardian.guard(
                operation, env.name, action, timeout=timeout, cancel_event=cancel_event
            )
        finally:
            warning = self.guardian.take_warning(operation, env.name)
            if warning is not None:
                run.add_log(str(warning), "warning")

    # ----- phases -----

    def _pre_check(self, run: DeploymentRun) -> None:
        run.enter(Phase.PRE_CHECK)
        run.add_log(f"Reason: {run.options.reason}")
        try:
            state = self.local_repository.snapshot()
        except GitCommandError as exc:
            raise GuardianError(f"Pre-deployment check failed: {exc}") from exc
        if not state.branch:
            raise GuardianError("Pre-deployment check failed: local repository is in detached HEAD state")

        run.local_state = state
        run.add_log(f"Local commit: {state.short_commit}, branch: {state.branch}")
        if state.has_changes:
            # Warn only; the remote is synced to the committed HEAD.
            run.add_log("Uncommitted local changes detected", "warning")

    def _register_resync(self, run: DeploymentRun, env: EnvironmentConfig) -> None:
        state = run.local_state

        def resync(cancel_event: Optional[threading.Event]) -> None:
            self.synchronizer.sync(
                env, state.commit, state.branch, force_sync=True, cancel_event=cancel_event
            )

        self.guardian.recovery.register_resync(env.name, resync)

    def _sync(
        self,
        run: DeploymentRun,
        env: EnvironmentConfig,
        cancel_event: Optional[threading.Event],
    ) -> None:
        run.enter(Phase.SYNC)
        state = run.local_state
        result = self._guarded(
            run,
            "sync",
            env,
            lambda cancel: self.synchronizer.sync(
                env,
                state.commit,
                state.branch,
                force_sync=run.options.force_sync,
                cancel_event=cancel,
            ),
            self.settings.sync_timeout,
            cancel_event,
        )
        run.sync_result = result
        if result.already_synchronized:
            run.add_log(f"Repository already synchronized at {result.remote_commit[:8]}")
        else:
            run.add_log(
                f"Repository synchronized: {result.previous_commit[:8]} -> {result.remote_commit[:8]}"
            )
        for warning in result.warnings:
            run.add_log(warning, "warning")

    def _deploy(
        self,
        run: DeploymentRun,
        env: EnvironmentConfig,
        cancel_event: Optional[threading.Event],
    ) -> None:
        run.enter(Phase.DEPLOY)
        launch = self._guarded(
            run,
            "deploy",
            env,
            lambda cancel: self.process_manager.restart(
                env, self._restart_options(run), cancel_event=cancel
            ),
            self._deploy_timeout(),
            cancel_event,
        )
        pid = f" (PID {launch.pid})" if launch.pid else ""
        run.add_log(f"Application restarted{pid}, logging to {launch.log_file}")

    def _validate(
        self,
        run: DeploymentRun,
        env: EnvironmentConfig,
        cancel_event: Optional[threading.Event],
    ) -> None:
        run.enter(Phase.VALIDATE)
        self._guarded(
            run,
            "validate",
            env,
            lambda cancel: self._check_health(run, env, cancel),
            self.settings.validate_timeout,
            cancel_event,
        )

    def _check_health(
        self,
        run: DeploymentRun,
        env: EnvironmentConfig,
        cancel_event: Optional[threading.Event],
    ) -> ValidationResult:
        result = self.validator.validate(env, cancel_event=cancel_event)
        run.validation = result
        for endpoint in result.endpoints:
            detail = endpoint.status if endpoint.error is None else endpoint.error
            level = "info" if endpoint.healthy else "warning"
            run.add_log(f"{endpoint.name} ({endpoint.url}): {detail}", level)
        run.add_log(
            f"Validation: {result.healthy_count}/{result.total_count} endpoints healthy "
            f"({result.ratio:.0%})"
        )
        if not result.healthy:
            raise ValidationError(result)
        return result

    # ----- rollback -----

    def _rollback(
        self,
        run: DeploymentRun,
        env: EnvironmentConfig,
        error: Exception,
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Single-depth rollback to the parent of the remote HEAD."""
        run.enter(Phase.ROLLBACK)
        run.add_log("Attempting rollback to previous commit", "warning")
        timeout = self.settings.sync_timeout + self._deploy_timeout() + self.settings.validate_timeout
        try:
            self._guarded(
                run,
                "rollback",
                env,
                lambda cancel: self._rollback_once(run, env, cancel),
                timeout,
                cancel_event,
            )
        except CancelledError as exc:
            run.add_log(f"Rollback cancelled: {exc}", "warning")
            run.finish(RunOutcome.CANCELLED, str(exc))
            return
        except Exception as rollback_error:
            if not isinstance(rollback_error, GuardianError):
                logger.exception("Unexpected error during rollback")
            run.rollback_error = str(rollback_error) or type(rollback_error).__name__
            fatal = FatalError(
                f"Deployment to {env.name} failed and rollback failed: "
                f"{error}; rollback: {rollback_error}",
                causes=(error, rollback_error),
            )
            run.add_log(str(fatal), "error")
            logger.error("%s", fatal)
            run.finish(RunOutcome.FATAL, str(fatal))
            return

        run.add_log(f"Rollback to {run.rollback_commit[:8]} completed", "warning")
        run.finish(RunOutcome.ROLLED_BACK)

    def _rollback_once(
        self,
        run: DeploymentRun,
        env: EnvironmentConfig,
        cancel_event: Optional[threading.Event],
    ) -> ValidationResult:
        parent = self.synchronizer.rollback_to_parent(env, cancel_event)
        run.rollback_commit = parent
        run.add_log(f"Remote reset to {parent[:8]}")
        self.process_manager.restart(env, self._restart_options(run), cancel_event=cancel_event)
        return self._check_health(run, env, cancel_event)

    def _deploy_timeout(self) -> float:
        if self.process_manager.build_command:
            return self.settings.deploy_timeout + self.settings.build_timeout
        return self.settings.deploy_timeout

    @staticmethod
    def _restart_options(run: DeploymentRun) -> RestartOptions:
        return RestartOptions(
            clear_cache=run.options.clear_cache,
            settle_delay=run.options.startup_delay,
        )
