"""Test doubles shared by the suites: scripted executor, clock, paramiko client, probes."""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from deploy_guardian.config import EndpointConfig, EnvironmentConfig, InfrastructureConfig
from deploy_guardian.errors import CancelledError
from deploy_guardian.gitops import LocalState
from deploy_guardian.registry import EnvironmentRegistry
from deploy_guardian.ssh import SSHCommandResult

Outcome = Union[str, BaseException, List, Callable[[str, str], str]]


def make_environment(name: str = "staging", **overrides) -> EnvironmentConfig:
    values = dict(
        name=name,
        host="10.0.0.24",
        path="/opt/app",
        ports=(3001,),
        container="134",
        process_pattern="next.*3001",
    )
    values.update(overrides)
    return EnvironmentConfig(**values)


def make_registry(*environments: EnvironmentConfig, infra_host: Optional[str] = "10.0.0.5") -> EnvironmentRegistry:
    environments = environments or (make_environment(),)
    return EnvironmentRegistry(
        {env.name: env for env in environments},
        InfrastructureConfig(host=infra_host),
    )


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExecutor:
    """Stands in for RemoteExecutor.

    Rules map a command fragment to an outcome; rules added later win.
    An outcome is stdout text, an exception to raise, a list consumed one
    item per call (the last item repeats) or a callable ``(target, command)``.
    """

    default_timeout = 30.0

    def __init__(self) -> None:
        self.rules: List[Tuple[str, Outcome]] = []
        self.calls: List[Tuple[str, str]] = []
        self.dropped: List[str] = []
        self.closed = False
        self._lock = threading.Lock()

    def on(self, fragment: str, outcome: Outcome) -> "FakeExecutor":
        self.rules.insert(0, (fragment, outcome))
        return self

    def execute(self, target, command, *, timeout=None, cancel_event=None) -> SSHCommandResult:
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError(f"Cancelled before running: {command}")
        with self._lock:
            self.calls.append((target, command))
            outcome = self._outcome_for(command)
        if callable(outcome) and not isinstance(outcome, BaseException):
            outcome = outcome(target, command)
        if isinstance(outcome, BaseException):
            raise outcome
        return SSHCommandResult(command=command, stdout=outcome or "", stderr="", exit_status=0)

    def check(self, target, command, **kwargs) -> str:
        return self.execute(target, command, **kwargs).stdout.strip()

    def drop(self, target) -> None:
        self.dropped.append(target)

    def close(self) -> None:
        self.closed = True

    def commands(self, target: Optional[str] = None) -> List[str]:
        return [command for t, command in self.calls if target is None or t == target]

    def count(self, fragment: str) -> int:
        return sum(1 for _, command in self.calls if fragment in command)

    def _outcome_for(self, command: str) -> Outcome:
        for fragment, outcome in self.rules:
            if fragment in command:
                if isinstance(outcome, list):
                    return outcome.pop(0) if len(outcome) > 1 else outcome[0]
                return outcome
        return ""


class FakeProbe:
    """Status probe answering from a route -> status map.

    A value may be an int, an exception, or a list consumed per call.
    """

    def __init__(self, statuses: Dict[str, object], default: int = 200) -> None:
        self.statuses = dict(statuses)
        self.default = default
        self.requests: List[str] = []

    def url(self, env, port, route) -> str:
        return f"http://{env.host}:{port}{route}"

    def status(self, env, port, route, *, cancel_event=None) -> int:
        self.requests.append(route)
        value = self.statuses.get(route, self.default)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, BaseException):
            raise value
        return value


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: object = None, cookies: Optional[Dict[str, str]] = None) -> None:
        self.status_code = status_code
        self.payload = payload
        self.cookies = cookies or {}

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON object could be decoded")
        return self.payload


class FakeHttpSession:
    """requests.Session double with a cookie jar.

    ``responses`` maps (method, url) to a FakeResponse or an exception. The
    dashboard answers 200 only once a login response has set a cookie.
    """

    def __init__(self, responses: Dict[Tuple[str, str], object]) -> None:
        self.responses = dict(responses)
        self.cookies: Dict[str, str] = {}
        self.calls: List[Tuple[str, str, dict]] = []
        self.closed = False

    def post(self, url, **kwargs):
        return self._respond("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._respond("GET", url, kwargs)

    def close(self) -> None:
        self.closed = True

    def _respond(self, method: str, url: str, kwargs: dict):
        self.calls.append((method, url, kwargs))
        outcome = self.responses.get((method, url))
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            outcome = FakeResponse(200 if self.cookies else 302)
        self.cookies.update(outcome.cookies)
        return outcome


def endpoints(*specs: Tuple[str, Optional[str]]) -> Tuple[EndpointConfig, ...]:
    return tuple(EndpointConfig(name=route, route=route, expected_status=expected) for route, expected in specs)


class FakeLocalRepository:
    def __init__(self, commit: str = "abc123def456", branch: str = "main", has_changes: bool = False,
                 hashes: Optional[Dict[str, str]] = None) -> None:
        self.state = LocalState(commit=commit, branch=branch, has_changes=has_changes)
        self.hashes = hashes or {}

    def snapshot(self) -> LocalState:
        return self.state

    def file_hash(self, relative_path: str) -> str:
        if relative_path not in self.hashes:
            raise FileNotFoundError(relative_path)
        return self.hashes[relative_path]


# ----- paramiko doubles -----

class FakeChannel:
    def __init__(self, stdout: str = "", stderr: str = "", status: int = 0,
                 polls: Optional[int] = 0) -> None:
        self._stdout = stdout.encode("utf-8")
        self._stderr = stderr.encode("utf-8")
        self._status = status
        self._polls = polls
        self.closed = False

    def exit_status_ready(self) -> bool:
        if self._polls is None:
            return False
        if self._polls > 0:
            self._polls -= 1
            return False
        return True

    def recv_ready(self) -> bool:
        return bool(self._stdout)

    def recv(self, size: int) -> bytes:
        data, self._stdout = self._stdout[:size], self._stdout[size:]
        return data

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        data, self._stderr = self._stderr[:size], self._stderr[size:]
        return data

    def recv_exit_status(self) -> int:
        return self._status

    def close(self) -> None:
        self.closed = True


class FakeStream:
    def __init__(self, channel: FakeChannel) -> None:
        self.channel = channel


class FakeSSHClient:
    def __init__(self, handler: Callable[[str], FakeChannel]) -> None:
        self.handler = handler
        self.connected = False
        self.closed = False
        self.commands: List[str] = []
        self.kwargs: dict = {}

    def set_missing_host_key_policy(self, policy) -> None:  # pragma: no cover - noop
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connected = True
        self.kwargs = kwargs

    def exec_command(self, command: str, timeout=None):
        self.commands.append(command)
        channel = self.handler(command)
        return (None, FakeStream(channel), FakeStream(channel))

    def close(self) -> None:
        self.closed = True


class FakeClientFactory:
    """Callable used as ``client_factory``; remembers every client it built."""

    def __init__(self, handler: Optional[Callable[[str], FakeChannel]] = None,
                 channels: Optional[Sequence[FakeChannel]] = None) -> None:
        self._channels = list(channels or [])
        self.handler = handler or self._next_channel
        self.clients: List[FakeSSHClient] = []

    def _next_channel(self, command: str) -> FakeChannel:
        return self._channels.pop(0) if self._channels else FakeChannel("ok")

    def __call__(self) -> FakeSSHClient:
        client = FakeSSHClient(self.handler)
        self.clients.append(client)
        return client
