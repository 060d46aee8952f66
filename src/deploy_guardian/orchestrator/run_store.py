"""Persist deployment run records as JSON files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..paths import get_runs_dir
from .models import DeploymentRun

logger = logging.getLogger(__name__)


class RunStore:
    """Stores one ``deploy_<env>_<timestamp>.json`` file per run."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self._directory = Path(directory) if directory else None

    @property
    def directory(self) -> Path:
        if self._directory is None:
            return get_runs_dir()
        self._directory.mkdir(parents=True, exist_ok=True)
        return self._directory

    def save(self, run: DeploymentRun) -> Optional[Path]:
        timestamp = run.started_at.strftime("%Y%m%d_%H%M%S")
        path = self.directory / f"deploy_{run.environment}_{timestamp}.json"
        try:
            with path.open("w", encoding="utf-8") as handle:
                json.dump(run.to_dict(), handle, indent=2, ensure_ascii=False)
        except OSError as exc:
            logger.warning("Could not save run record: %s", exc)
            return None
        logger.info("Run record saved to: %s", path)
        return path

    def list(self) -> List[Path]:
        """Run files, newest first."""
        return sorted(
            self.directory.glob("deploy_*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )

    def latest(self) -> Optional[Path]:
        files = self.list()
        return files[0] if files else None

    def resolve(self, name: str) -> Optional[Path]:
        candidate = Path(name)
        if candidate.is_file():
            return candidate
        candidate = self.directory / name
        return candidate if candidate.is_file() else None

    @staticmethod
    def load(path: Path) -> Dict[str, Any]:
        with Path(path).open("r", encoding="utf-8") as handle:
            return json.load(handle)
