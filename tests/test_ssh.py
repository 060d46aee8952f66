import threading
import unittest

from deploy_guardian.errors import (
    CancelledError,
    ConfigurationError,
    ExecError,
    FailureKind,
    OperationTimeoutError,
)
from deploy_guardian.ssh import RemoteExecutor, SSHCredentials, SSHSession, strip_ssh_noise

from fakes import FakeChannel, FakeClientFactory, make_environment, make_registry


class SSHSessionTests(unittest.TestCase):
    def _session(self, *channels: FakeChannel, **credentials) -> SSHSession:
        values = {"host": "example.com", "username": "root"}
        values.update(credentials)
        factory = FakeClientFactory(channels=channels)
        session = SSHSession(SSHCredentials(**values), client_factory=factory)  # type: ignore[arg-type]
        session.poll_interval = 0.01
        self.factory = factory
        return session

    def test_run_collects_output_and_status(self) -> None:
        session = self._session(FakeChannel(stdout="ok\n", stderr="warn", status=3, polls=2))
        with session:
            result = session.run("echo test")
        self.assertEqual(result.stdout, "ok")
        self.assertEqual(result.stderr, "warn")
        self.assertEqual(result.exit_status, 3)
        self.assertFalse(result.ok)
        self.assertTrue(self.factory.clients[0].closed)

    def test_password_auth_disables_key_lookup(self) -> None:
        session = self._session(password="secret", auth_method="password")
        session.connect()
        kwargs = self.factory.clients[0].kwargs
        self.assertEqual(kwargs["password"], "secret")
        self.assertFalse(kwargs["look_for_keys"])
        self.assertFalse(kwargs["allow_agent"])

    def test_timeout_is_reported_in_result(self) -> None:
        channel = FakeChannel(polls=None)
        session = self._session(channel)
        result = session.run("sleep 100", timeout=0.05)
        self.assertTrue(result.timed_out)
        self.assertTrue(channel.closed)

    def test_cancel_event_aborts_wait(self) -> None:
        cancel = threading.Event()
        cancel.set()
        session = self._session(FakeChannel(polls=None))
        result = session.run("sleep 100", timeout=5, cancel_event=cancel)
        self.assertTrue(result.cancelled)


class RemoteExecutorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.channels = {}
        self.factory = FakeClientFactory(handler=self._channel_for)
        self.registry = make_registry(make_environment())
        self.executor = RemoteExecutor(
            self.registry,
            session_factory=self._session_factory,
        )

    def _session_factory(self, credentials: SSHCredentials) -> SSHSession:
        session = SSHSession(credentials, client_factory=self.factory)  # type: ignore[arg-type]
        session.poll_interval = 0.01
        return session

    def _channel_for(self, command: str) -> FakeChannel:
        options = self.channels.get(command, {"stdout": "ok"})
        return FakeChannel(**options)

    def test_success_returns_stdout(self) -> None:
        self.assertEqual(self.executor.check("staging", "hostname"), "ok")

    def test_host_address_resolves_to_environment(self) -> None:
        self.assertEqual(self.executor.check("10.0.0.24", "hostname"), "ok")
        self.assertEqual(len(self.factory.clients), 1)

    def test_nonzero_exit_raises_exec_error_with_kind(self) -> None:
        self.channels["npm start"] = {
            "stderr": "Error: listen EADDRINUSE: address already in use :::3001",
            "status": 1,
        }
        with self.assertRaises(ExecError) as ctx:
            self.executor.execute("staging", "npm start")
        self.assertEqual(ctx.exception.exit_status, 1)
        self.assertIs(ctx.exception.kind, FailureKind.PORT_CONFLICT)
        self.assertIn("EADDRINUSE", ctx.exception.stderr)

    def test_banner_only_exit_255_is_success(self) -> None:
        self.channels["git status"] = {
            "stdout": "clean",
            "stderr": "Warning: Permanently added '10.0.0.24' (ED25519) to the list of known hosts.",
            "status": 255,
        }
        result = self.executor.execute("staging", "git status")
        self.assertEqual(result.exit_status, 0)
        self.assertEqual(result.stdout, "clean")
        self.assertEqual(result.stderr, "")

    def test_exit_255_with_real_error_fails(self) -> None:
        self.channels["ls"] = {
            "stderr": "Warning: Permanently added 'x'.\nssh: connect to host x port 22: Connection refused",
            "status": 255,
        }
        with self.assertRaises(ExecError) as ctx:
            self.executor.execute("staging", "ls")
        self.assertIs(ctx.exception.kind, FailureKind.CONNECTION_REFUSED)
        self.assertNotIn("Permanently added", ctx.exception.stderr)

    def test_timeout_raises(self) -> None:
        self.channels["sleep 100"] = {"polls": None}
        with self.assertRaises(OperationTimeoutError) as ctx:
            self.executor.execute("staging", "sleep 100", timeout=0.05)
        self.assertEqual(ctx.exception.timeout, 0.05)

    def test_cancelled_before_start_runs_nothing(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(CancelledError):
            self.executor.execute("staging", "hostname", cancel_event=cancel)
        self.assertEqual(self.factory.clients, [])

    def test_sessions_are_cached_until_dropped(self) -> None:
        self.executor.check("staging", "one")
        self.executor.check("staging", "two")
        self.assertEqual(len(self.factory.clients), 1)
        self.assertEqual(self.factory.clients[0].commands, ["one", "two"])

        self.executor.drop("staging")
        self.assertTrue(self.factory.clients[0].closed)
        self.executor.check("staging", "three")
        self.assertEqual(len(self.factory.clients), 2)

    def test_unknown_target_is_rejected(self) -> None:
        with self.assertRaises(ConfigurationError):
            self.executor.execute("qa", "hostname")

    def test_strip_ssh_noise(self) -> None:
        stderr = "Warning: Permanently added 'h' to the list of known hosts.\nreal problem\n"
        self.assertEqual(strip_ssh_noise(stderr), "real problem")
        self.assertEqual(strip_ssh_noise(""), "")


if __name__ == "__main__":
    unittest.main()
