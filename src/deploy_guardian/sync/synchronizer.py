"""Repository synchronization: bring a remote working copy to a target commit."""

from __future__ import annotations

import logging
import shlex
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

from ..config import EnvironmentConfig
from ..errors import CancelledError, GuardianError, SyncError
from ..gitops import LocalRepository
from ..ssh import RemoteExecutor

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of a repository synchronization."""

    environment: str
    target_commit: str
    previous_commit: str
    remote_commit: str
    already_synchronized: bool = False
    warnings: List[str] = field(default_factory=list)
    file_checks: Dict[str, bool] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.previous_commit != self.remote_commit

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "target_commit": self.target_commit,
            "previous_commit": self.previous_commit,
            "remote_commit": self.remote_commit,
            "already_synchronized": self.already_synchronized,
            "warnings": list(self.warnings),
            "file_checks": dict(self.file_checks),
        }


class RepositorySynchronizer:
    """Fetch + hard-reset protocol with post-reset verification.

    Nothing here retries: a hash mismatch after reset is reported as an
    unrecoverable SyncError and left for manual intervention.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        local_repository: Optional[LocalRepository] = None,
        critical_files: Sequence[str] = (),
        command_timeout: float = 30.0,
        fetch_timeout: float = 300.0,
        remote: str = "origin",
    ) -> None:
        self.executor = executor
        self.local_repository = local_repository
        self.critical_files = list(critical_files)
        self.command_timeout = command_timeout
        self.fetch_timeout = fetch_timeout
        self.remote = remote

    def remote_head(
        self, env: EnvironmentConfig, cancel_event: Optional[threading.Event] = None
    ) -> str:
        with self._as_sync_error("read remote HEAD"):
            return self._git(env, "rev-parse HEAD", cancel_event=cancel_event)

    def sync(
        self,
        env: EnvironmentConfig,
        target_commit: str,
        branch: str,
        *,
        force_sync: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        previous = self.remote_head(env, cancel_event)
        logger.info("[%s] Remote state: %s, target: %s", env.name, previous[:8], target_commit[:8])

        if previous == target_commit and not force_sync:
            logger.info("[%s] Repository already synchronized", env.name)
            return SyncResult(
                environment=env.name,
                target_commit=target_commit,
                previous_commit=previous,
                remote_commit=previous,
                already_synchronized=True,
            )

        logger.info("[%s] Repository synchronization required", env.name)
        with self._as_sync_error("fetch"):
            self._git(
                env,
                f"fetch {shlex.quote(self.remote)} --force",
                timeout=self.fetch_timeout,
                cancel_event=cancel_event,
            )
        with self._as_sync_error("reset"):
            self._git(
                env,
                f"reset --hard {shlex.quote(f'{self.remote}/{branch}')}",
                cancel_event=cancel_event,
            )

        current = self.remote_head(env, cancel_event)
        if current != target_commit:
            raise SyncError(
                f"Repository synchronization failed on {env.name}: "
                f"{current} !== {target_commit}",
                unrecoverable=True,
            )
        logger.info("[%s] Repository synchronized to %s", env.name, current[:8])

        result = SyncResult(
            environment=env.name,
            target_commit=target_commit,
            previous_commit=previous,
            remote_commit=current,
        )
        self.verify_critical_files(env, result, cancel_event=cancel_event)
        return result

    def verify_critical_files(
        self,
        env: EnvironmentConfig,
        result: SyncResult,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Compare local and remote md5 of each critical file.

        Mismatches are warnings only: generated files may legitimately differ
        per environment.
        """
        if self.local_repository is None or not self.critical_files:
            return
        for path in self.critical_files:
            try:
                local_hash = self.local_repository.file_hash(path)
            except OSError as exc:
                result.file_checks[path] = False
                result.warnings.append(f"{path}: local file unreadable ({exc})")
                logger.warning("[%s] %s: local file unreadable", env.name, path)
                continue
            try:
                remote_hash = self.executor.check(
                    env.name,
                    f"cd {shlex.quote(env.path)} && md5sum {shlex.quote(path)} | cut -d' ' -f1",
                    timeout=self.command_timeout,
                    cancel_event=cancel_event,
                )
            except CancelledError:
                raise
            except GuardianError as exc:
                remote_hash = ""
                logger.debug("[%s] md5sum %s failed: %s", env.name, path, exc)

            matched = local_hash == remote_hash
            result.file_checks[path] = matched
            if matched:
                logger.info("[%s] %s: integrity verified", env.name, path)
            else:
                message = f"{path}: integrity mismatch ({local_hash} != {remote_hash or 'missing'})"
                result.warnings.append(message)
                logger.warning("[%s] %s", env.name, message)

    def rollback_to_parent(
        self, env: EnvironmentConfig, cancel_event: Optional[threading.Event] = None
    ) -> str:
        """Reset the remote working copy to the parent of its current HEAD."""
        with self._as_sync_error("resolve parent commit"):
            parent = self._git(env, "rev-parse HEAD~1", cancel_event=cancel_event)
        with self._as_sync_error("reset to parent"):
            self._git(env, f"reset --hard {shlex.quote(parent)}", cancel_event=cancel_event)
        current = self.remote_head(env, cancel_event)
        if current != parent:
            raise SyncError(
                f"Rollback reset failed on {env.name}: {current} !== {parent}",
                unrecoverable=True,
            )
        logger.info("[%s] Remote working copy rolled back to %s", env.name, parent[:8])
        return parent

    def _git(
        self,
        env: EnvironmentConfig,
        args: str,
        *,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        return self.executor.check(
            env.name,
            f"cd {shlex.quote(env.path)} && git {args}",
            timeout=timeout or self.command_timeout,
            cancel_event=cancel_event,
        )

    @contextmanager
    def _as_sync_error(self, step: str) -> Iterator[None]:
        try:
            yield
        except (CancelledError, SyncError):
            raise
        except GuardianError as exc:
            raise SyncError(f"Repository {step} failed: {exc}", kind=exc.kind) from exc
