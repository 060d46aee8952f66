"""Unified path constants for deploy-guardian.

All data is stored under .deploy-guardian directory:
- .deploy-guardian/logs/   # Append-only audit log (JSON lines, one file per day)
- .deploy-guardian/runs/   # One JSON record per deployment run
"""

from pathlib import Path

BASE_DIR = Path(".deploy-guardian")

LOGS_DIR = BASE_DIR / "logs"
RUNS_DIR = BASE_DIR / "runs"


def get_logs_dir() -> Path:
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    return LOGS_DIR


def get_runs_dir() -> Path:
    RUNS_DIR.mkdir(parents=True, exist_ok=True)
    return RUNS_DIR
