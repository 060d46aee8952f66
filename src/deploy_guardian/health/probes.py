"""Probe transports: how a status code is obtained for one URL."""

from __future__ import annotations

import shlex
import threading
from typing import Optional, Protocol

import requests

from ..config import EnvironmentConfig
from ..ssh import RemoteExecutor


class StatusProbe(Protocol):
    def status(
        self,
        env: EnvironmentConfig,
        port: int,
        route: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> int:
        ...

    def url(self, env: EnvironmentConfig, port: int, route: str) -> str:
        ...


class HttpProbe:
    """Direct HTTP GET from this machine against host:port."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 10.0) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def url(self, env: EnvironmentConfig, port: int, route: str) -> str:
        return f"http://{env.host}:{port}{route}"

    def status(self, env, port, route, *, cancel_event=None) -> int:
        response = self.session.get(
            self.url(env, port, route),
            timeout=self.timeout,
            allow_redirects=False,
        )
        return response.status_code


class RemoteCurlProbe:
    """curl run on the target host against localhost, for ports not exposed externally."""

    def __init__(self, executor: RemoteExecutor, timeout: float = 10.0) -> None:
        self.executor = executor
        self.timeout = timeout

    def url(self, env: EnvironmentConfig, port: int, route: str) -> str:
        return f"http://localhost:{port}{route}"

    def status(self, env, port, route, *, cancel_event=None) -> int:
        max_time = max(1, int(self.timeout))
        output = self.executor.check(
            env.name,
            f"curl -s -o /dev/null --max-time {max_time} -w '%{{http_code}}' "
            f"{shlex.quote(self.url(env, port, route))}",
            timeout=self.timeout + 5,
            cancel_event=cancel_event,
        )
        return int(output)
