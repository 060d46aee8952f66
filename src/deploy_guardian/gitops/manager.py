"""Local git repository inspection."""

from __future__ import annotations

import hashlib
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


class GitCommandError(RuntimeError):
    """Raised when a git command fails."""

    def __init__(self, command: list[str], exit_code: int, stderr: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Git command {' '.join(command)} failed with code {exit_code}: {stderr}")


@dataclass
class LocalState:
    """Snapshot of the local working copy captured during pre-check."""

    commit: str
    branch: str
    has_changes: bool = False
    has_untracked: bool = False

    @property
    def short_commit(self) -> str:
        return self.commit[:8]

    def to_dict(self) -> dict:
        return {
            "commit": self.commit,
            "branch": self.branch,
            "has_changes": self.has_changes,
            "has_untracked": self.has_untracked,
        }


class LocalRepository:
    """Wraps `git` CLI commands against the local checkout."""

    def __init__(self, path: Path | str = ".", git_binary: str = "git") -> None:
        self.path = Path(path)
        self.git_binary = git_binary

    def head_commit(self) -> str:
        return self._run(["rev-parse", "HEAD"]).strip()

    def current_branch(self) -> str:
        return self._run(["branch", "--show-current"]).strip()

    def status(self) -> str:
        return self._run(["status", "--porcelain"])

    def snapshot(self) -> LocalState:
        status = self.status()
        return LocalState(
            commit=self.head_commit(),
            branch=self.current_branch(),
            has_changes=bool(status.strip()),
            has_untracked="??" in status,
        )

    def file_hash(self, relative_path: str) -> str:
        """md5 of a file in the working copy; matches remote `md5sum` output."""
        digest = hashlib.md5()
        with (self.path / relative_path).open("rb") as handle:
            for chunk in iter(lambda: handle.read(65536), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def _run(self, args: list[str], cwd: Optional[Path] = None) -> str:
        command = [self.git_binary] + args
        process = subprocess.run(
            command,
            cwd=str(cwd or self.path),
            capture_output=True,
            text=True,
            check=False,
        )
        if process.returncode != 0:
            raise GitCommandError(command, process.returncode, process.stderr.strip())
        return process.stdout
