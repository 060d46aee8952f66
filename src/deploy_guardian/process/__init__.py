"""Remote application process lifecycle."""

from .manager import ProcessLaunch, ProcessManager, RestartOptions, self_safe_pattern

__all__ = ["ProcessLaunch", "ProcessManager", "RestartOptions", "self_safe_pattern"]
