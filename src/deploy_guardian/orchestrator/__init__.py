"""Deployment orchestration."""

from .locks import TargetLocks
from .models import DeploymentRun, DeployOptions, Phase, PhaseLogEntry, RunOutcome
from .orchestrator import DeploymentOrchestrator
from .run_store import RunStore

__all__ = [
    "TargetLocks",
    "DeploymentRun",
    "DeployOptions",
    "Phase",
    "PhaseLogEntry",
    "RunOutcome",
    "DeploymentOrchestrator",
    "RunStore",
]
