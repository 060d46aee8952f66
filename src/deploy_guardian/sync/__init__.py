"""Remote repository synchronization."""

from .synchronizer import RepositorySynchronizer, SyncResult

__all__ = ["RepositorySynchronizer", "SyncResult"]
