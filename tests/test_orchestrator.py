import tempfile
import threading
import unittest
from pathlib import Path

from deploy_guardian.config import DeploymentSettings
from deploy_guardian.errors import ConfigurationError, DeadlockError, ExecError, LockTimeoutError
from deploy_guardian.guardian import (
    AttemptKey,
    DeadlockDetector,
    DeadlockStatus,
    Guardian,
    RecoveryCoordinator,
)
from deploy_guardian.health import HealthValidator
from deploy_guardian.orchestrator import (
    DeploymentOrchestrator,
    DeployOptions,
    Phase,
    RunOutcome,
    RunStore,
)
from deploy_guardian.process import ProcessManager
from deploy_guardian.sync import RepositorySynchronizer

from fakes import (
    FakeExecutor,
    FakeLocalRepository,
    FakeProbe,
    endpoints,
    make_environment,
    make_registry,
)

COMMIT = "abc123def4567890"


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)

        self.env = make_environment(
            endpoints=endpoints(("/", "2xx"), ("/login", "200"), ("/api", "200"), ("/admin", "200"))
        )
        self.registry = make_registry(self.env)
        self.executor = FakeExecutor()
        self.executor.on("rev-parse HEAD", ["old999", COMMIT])
        self.executor.on("nohup", "4242")
        self.probe = FakeProbe({})
        self.local = FakeLocalRepository(commit=COMMIT)

        process_manager = ProcessManager(self.executor, settle_delay=0)  # type: ignore[arg-type]
        self.recovery = RecoveryCoordinator(
            self.registry,
            self.executor,  # type: ignore[arg-type]
            process_manager,
            pinger=lambda host: True,
        )
        self.detector = DeadlockDetector()
        self.store = RunStore(Path(self._tmp.name))
        self.orchestrator = DeploymentOrchestrator(
            self.registry,
            Guardian(self.detector, self.recovery, operation_timeout=5),
            RepositorySynchronizer(self.executor),  # type: ignore[arg-type]
            process_manager,
            HealthValidator(http_probe=self.probe),
            self.local,  # type: ignore[arg-type]
            settings=DeploymentSettings(lock_timeout=0.1),
            run_store=self.store,
        )

    @staticmethod
    def phases(run):
        seen = []
        for entry in run.log:
            if not seen or seen[-1] is not entry.phase:
                seen.append(entry.phase)
        return seen


class DeployTests(OrchestratorTestCase):
    def test_successful_run(self) -> None:
        run = self.orchestrator.deploy("staging", DeployOptions(reason="Release 42"))
        self.assertEqual(run.outcome, RunOutcome.SUCCEEDED)
        self.assertTrue(run.succeeded)
        self.assertEqual(
            self.phases(run),
            [Phase.PRE_CHECK, Phase.SYNC, Phase.DEPLOY, Phase.VALIDATE],
        )
        self.assertIs(run.phase, Phase.DONE)
        self.assertEqual(run.sync_result.remote_commit, COMMIT)
        self.assertTrue(run.validation.healthy)
        self.assertIsNotNone(run.duration)
        self.assertIn("Reason: Release 42", str(run.log[0]))

    def test_run_record_is_saved(self) -> None:
        self.orchestrator.deploy("staging")
        files = self.store.list()
        self.assertEqual(len(files), 1)
        data = self.store.load(files[0])
        self.assertEqual(data["status"], "succeeded")
        self.assertEqual(data["environment"], "staging")
        self.assertEqual(data["local"]["commit"], COMMIT)
        self.assertEqual(data["validation"]["healthy_count"], 4)
        self.assertTrue(data["log"])

    def test_already_synchronized_remote_is_not_reset(self) -> None:
        self.executor.on("rev-parse HEAD", COMMIT)
        run = self.orchestrator.deploy("staging")
        self.assertTrue(run.sync_result.already_synchronized)
        self.assertEqual(self.executor.count("fetch"), 0)
        self.assertEqual(self.executor.count("reset --hard"), 0)

    def test_dirty_working_copy_is_only_a_warning(self) -> None:
        self.local.state.has_changes = True
        run = self.orchestrator.deploy("staging")
        self.assertTrue(run.succeeded)
        warnings = [e.message for e in run.log if e.level == "warning"]
        self.assertIn("Uncommitted local changes detected", warnings)

    def test_validation_failure_without_rollback(self) -> None:
        self.probe.statuses.update({"/api": 500, "/admin": 500})
        run = self.orchestrator.deploy("staging")
        self.assertEqual(run.outcome, RunOutcome.FAILED)
        self.assertIn("2/4", run.error)
        self.assertFalse(run.validation.healthy)
        self.assertEqual(self.executor.count("HEAD~1"), 0)

    def test_sync_failure_stops_pipeline(self) -> None:
        self.executor.on("rev-parse HEAD", "old999")
        run = self.orchestrator.deploy("staging")
        self.assertEqual(run.outcome, RunOutcome.FAILED)
        self.assertEqual(self.phases(run)[-1], Phase.SYNC)
        self.assertEqual(self.executor.count("pkill"), 0)
        self.assertEqual(self.probe.requests, [])

    def test_detached_head_fails_precheck_without_rollback(self) -> None:
        self.local.state.branch = ""
        run = self.orchestrator.deploy("staging", DeployOptions(auto_rollback=True))
        self.assertEqual(run.outcome, RunOutcome.FAILED)
        self.assertEqual(self.executor.calls, [])

    def test_missing_artifact_triggers_resync_for_the_run(self) -> None:
        self.executor.on("nohup", ExecError("nohup", 127, "nohup: failed to run command 'npm': No such file or directory"))
        run = self.orchestrator.deploy("staging")
        self.assertEqual(run.outcome, RunOutcome.FAILED)
        self.assertEqual(self.executor.count("fetch origin --force"), 2)

        self.recovery.dispatch("staging", ExecError("ls", 2, "No such file or directory"))
        self.assertEqual(self.executor.count("fetch origin --force"), 2)

    def test_shell_braces_in_start_command_deploy_cleanly(self) -> None:
        self.registry = make_registry(make_environment(start_command="PORT=${PORT} npm start"))
        self.orchestrator.registry = self.registry
        run = self.orchestrator.deploy("staging", DeployOptions(auto_rollback=True))
        self.assertEqual(run.outcome, RunOutcome.SUCCEEDED)
        self.assertIn("nohup PORT=${PORT} npm start", self.executor.commands()[-1])

    def test_unexpected_error_is_a_phase_failure(self) -> None:
        self.executor.on("nohup", RuntimeError("unexpected launcher state"))
        run = self.orchestrator.deploy("staging")
        self.assertEqual(run.outcome, RunOutcome.FAILED)
        self.assertIn("unexpected launcher state", run.error)
        self.assertEqual(self.phases(run)[-1], Phase.DEPLOY)
        self.assertEqual(self.store.load(self.store.latest())["status"], "failed")

    def test_build_failure_fails_deploy_phase(self) -> None:
        self.orchestrator.process_manager.build_command = "npm run build"
        self.executor.on("npm run build", ExecError("npm run build", 1, "Build error: Type error in page.tsx"))
        run = self.orchestrator.deploy("staging")
        self.assertEqual(run.outcome, RunOutcome.FAILED)
        self.assertEqual(self.phases(run)[-1], Phase.DEPLOY)
        self.assertIn("Type error", run.error)
        self.assertEqual(self.executor.count("nohup"), 0)
        self.assertEqual(self.orchestrator._deploy_timeout(), 120.0 + 300.0)

    def test_soft_deadlock_warning_lands_in_run_log(self) -> None:
        key = AttemptKey("validate", "staging")
        self.orchestrator.guardian.deadlock_warnings[key] = DeadlockError(
            "validate", "staging", DeadlockStatus(
                is_deadlock=True, needs_force_recovery=False, attempt_count=4, time_since_first=70.0
            )
        )
        run = self.orchestrator.deploy("staging")
        self.assertTrue(run.succeeded)
        warnings = [e.message for e in run.log if e.level == "warning"]
        self.assertTrue(any("Deadlock detected for validate-staging" in w for w in warnings))
        self.assertEqual(self.orchestrator.guardian.deadlock_warnings, {})

    def test_unknown_environment(self) -> None:
        with self.assertRaises(ConfigurationError):
            self.orchestrator.deploy("qa")

    def test_concurrent_run_for_same_target_fails_fast(self) -> None:
        with self.orchestrator.locks.hold("staging"):
            with self.assertRaises(LockTimeoutError):
                self.orchestrator.deploy("staging")
        self.assertEqual(self.executor.calls, [])

    def test_cancelled_run_is_not_counted(self) -> None:
        cancel = threading.Event()
        cancel.set()
        run = self.orchestrator.deploy("staging", cancel_event=cancel)
        self.assertEqual(run.outcome, RunOutcome.CANCELLED)
        self.assertEqual(self.executor.calls, [])
        self.assertIsNone(self.detector.attempts(AttemptKey("sync", "staging")))


class RollbackTests(OrchestratorTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.executor.on("rev-parse HEAD", ["old999", COMMIT, "parent1"])
        self.executor.on("rev-parse HEAD~1", "parent1")
        self.options = DeployOptions(auto_rollback=True)

    def test_rollback_after_failed_validation(self) -> None:
        self.probe.statuses.update({"/api": [500, 200], "/admin": [500, 200]})
        run = self.orchestrator.deploy("staging", self.options)
        self.assertEqual(run.outcome, RunOutcome.ROLLED_BACK)
        self.assertFalse(run.succeeded)
        self.assertEqual(run.rollback_commit, "parent1")
        self.assertIn("2/4", run.error)
        self.assertIsNone(run.rollback_error)
        self.assertTrue(run.validation.healthy)
        self.assertEqual(self.phases(run)[-1], Phase.ROLLBACK)
        self.assertIn("cd /opt/app && git reset --hard parent1", self.executor.commands())
        self.assertEqual(self.executor.count("nohup"), 2)

    def test_failed_rollback_is_fatal_and_single_depth(self) -> None:
        self.probe.statuses.update({"/api": 500, "/admin": 500})
        run = self.orchestrator.deploy("staging", self.options)
        self.assertEqual(run.outcome, RunOutcome.FATAL)
        self.assertEqual(self.executor.count("HEAD~1"), 1)
        self.assertIsNotNone(run.rollback_error)
        self.assertIn("rollback", run.error)
        self.assertEqual(self.store.load(self.store.latest())["status"], "fatal")

    def test_rollback_after_unexpected_error(self) -> None:
        self.executor.on("nohup", [RuntimeError("unexpected launcher state"), "4242"])
        run = self.orchestrator.deploy("staging", self.options)
        self.assertEqual(run.outcome, RunOutcome.ROLLED_BACK)
        self.assertIn("unexpected launcher state", run.error)
        self.assertEqual(run.rollback_commit, "parent1")

    def test_unexpected_error_during_rollback_is_fatal(self) -> None:
        self.executor.on("nohup", RuntimeError("unexpected launcher state"))
        run = self.orchestrator.deploy("staging", self.options)
        self.assertEqual(run.outcome, RunOutcome.FATAL)
        self.assertIn("unexpected launcher state", run.rollback_error)
        self.assertEqual(self.executor.count("HEAD~1"), 1)

    def test_rollback_after_sync_failure(self) -> None:
        self.executor.on("fetch", ExecError("git fetch", 128, "fatal: could not read from remote"))
        self.executor.on("rev-parse HEAD", ["old999", "parent1"])
        run = self.orchestrator.deploy("staging", self.options)
        self.assertEqual(run.outcome, RunOutcome.ROLLED_BACK)
        self.assertEqual(self.phases(run), [Phase.PRE_CHECK, Phase.SYNC, Phase.ROLLBACK])


if __name__ == "__main__":
    unittest.main()
