"""Git operations helpers."""

from .manager import GitCommandError, LocalRepository, LocalState

__all__ = ["GitCommandError", "LocalRepository", "LocalState"]
