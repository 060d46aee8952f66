"""Process lifecycle on the remote host: stop, clean, launch, settle.

The launched process is owned by the remote host, not by this process.
Nothing here supervises it: a launch is fire-and-forget and correctness
is established afterwards by the health validator.
"""

from __future__ import annotations

import logging
import shlex
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

from ..config import EnvironmentConfig, render_command
from ..errors import CancelledError
from ..ssh import RemoteExecutor

logger = logging.getLogger(__name__)


def self_safe_pattern(pattern: str) -> str:
    """Rewrite a `pkill -f` pattern so it cannot match the shell running it.

    ``next-server`` becomes ``[n]ext-server``: same regex, but the literal
    text no longer appears in the remote shell's own command line.
    """
    if pattern and pattern[0].isalnum():
        return f"[{pattern[0]}]{pattern[1:]}"
    return pattern


@dataclass
class RestartOptions:
    clear_cache: bool = True
    settle_delay: Optional[float] = None


@dataclass
class ProcessLaunch:
    environment: str
    command: str
    log_file: str
    pid: Optional[int] = None


class ProcessManager:
    """Stops and restarts the application process for an environment."""

    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        project_name: str = "app",
        start_command: str = "npm run dev -- --port {port}",
        build_command: Optional[str] = None,
        cache_dirs: Sequence[str] = (".next", "node_modules/.cache"),
        settle_delay: float = 8.0,
        command_timeout: float = 30.0,
        build_timeout: float = 300.0,
    ) -> None:
        self.executor = executor
        self.project_name = project_name
        self.start_command = start_command
        self.build_command = build_command
        self.cache_dirs = list(cache_dirs)
        self.settle_delay = settle_delay
        self.command_timeout = command_timeout
        self.build_timeout = build_timeout

    def log_file_for(self, env: EnvironmentConfig) -> str:
        return env.log_file or f"/var/log/{self.project_name}-{env.name}.log"

    def stop(self, env: EnvironmentConfig, cancel_event: Optional[threading.Event] = None) -> None:
        """Kill processes matching the environment pattern. No match is success."""
        pattern = self_safe_pattern(env.match_pattern)
        logger.info("[%s] Stopping existing processes (%s)", env.name, env.match_pattern)
        self.executor.execute(
            env.name,
            f"pkill -f {shlex.quote(pattern)} || true",
            timeout=self.command_timeout,
            cancel_event=cancel_event,
        )

    def clear_cache(self, env: EnvironmentConfig, cancel_event: Optional[threading.Event] = None) -> None:
        if not self.cache_dirs:
            return
        logger.info("[%s] Clearing application cache", env.name)
        targets = " ".join(shlex.quote(path) for path in self.cache_dirs)
        self.executor.execute(
            env.name,
            f"cd {shlex.quote(env.path)} && rm -rf {targets} || true",
            timeout=self.command_timeout,
            cancel_event=cancel_event,
        )

    def render(self, template: str, env: EnvironmentConfig) -> str:
        return render_command(template, port=env.port, name=env.name, path=env.path)

    def build(self, env: EnvironmentConfig, cancel_event: Optional[threading.Event] = None) -> None:
        """Run the project build command in the checkout, if one is configured."""
        if not self.build_command:
            return
        command = self.render(self.build_command, env)
        logger.info("[%s] Building application: %s", env.name, command)
        self.executor.check(
            env.name,
            f"cd {shlex.quote(env.path)} && {command}",
            timeout=self.build_timeout,
            cancel_event=cancel_event,
        )

    def start(self, env: EnvironmentConfig, cancel_event: Optional[threading.Event] = None) -> ProcessLaunch:
        command = self.render(env.start_command or self.start_command, env)
        log_file = self.log_file_for(env)
        logger.info("[%s] Starting application: %s", env.name, command)
        output = self.executor.check(
            env.name,
            f"cd {shlex.quote(env.path)} && nohup {command} > {shlex.quote(log_file)} 2>&1 < /dev/null & echo $!",
            timeout=self.command_timeout,
            cancel_event=cancel_event,
        )
        pid = int(output) if output.isdigit() else None
        if pid:
            logger.info("[%s] Application started with PID: %s", env.name, pid)
        return ProcessLaunch(environment=env.name, command=command, log_file=log_file, pid=pid)

    def restart(
        self,
        env: EnvironmentConfig,
        options: Optional[RestartOptions] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> ProcessLaunch:
        options = options or RestartOptions()
        self.stop(env, cancel_event)
        if options.clear_cache:
            self.clear_cache(env, cancel_event)
        self.build(env, cancel_event)
        launch = self.start(env, cancel_event)

        delay = self.settle_delay if options.settle_delay is None else options.settle_delay
        if delay > 0:
            logger.info("[%s] Waiting %.0fs for application startup...", env.name, delay)
            waiter = cancel_event or threading.Event()
            if waiter.wait(delay):
                raise CancelledError(f"Cancelled while waiting for {env.name} to settle")
        return launch

    def kill_ports(
        self,
        env: EnvironmentConfig,
        process_names: Sequence[str] = (),
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Forcibly free the environment's ports and kill known-problematic processes."""
        for port in env.ports:
            self.executor.execute(
                env.name,
                f"fuser -k {int(port)}/tcp || true",
                timeout=self.command_timeout,
                cancel_event=cancel_event,
            )
        for name in process_names:
            self.executor.execute(
                env.name,
                f"pkill -f {shlex.quote(self_safe_pattern(name))} || true",
                timeout=self.command_timeout,
                cancel_event=cancel_event,
            )
