"""Append-only operation audit log."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..paths import get_logs_dir

logger = logging.getLogger(__name__)


class AuditLog:
    """Writes one JSON line per guarded action. Never read back by the core."""

    def __init__(self, directory: Optional[Path] = None, enabled: bool = True) -> None:
        self.directory = Path(directory) if directory else None
        self.enabled = enabled
        self._lock = threading.Lock()

    def _path(self, now: datetime) -> Path:
        directory = self.directory or get_logs_dir()
        return directory / f"guardian-{now.date().isoformat()}.log"

    def record(self, key: str, action: str, outcome: str, **details: Any) -> None:
        if not self.enabled:
            return
        now = datetime.now(timezone.utc)
        entry = {
            "timestamp": now.isoformat(),
            "key": key,
            "action": action,
            "outcome": outcome,
        }
        if details:
            entry["details"] = details
        try:
            path = self._path(now)
            path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock, path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            logger.warning("Could not write audit entry: %s", exc)
