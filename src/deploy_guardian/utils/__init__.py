"""Shared helpers."""

from .audit import AuditLog
from .logging import get_logger, set_verbosity

__all__ = ["AuditLog", "get_logger", "set_verbosity"]
