"""Ephemeral run-level progress snapshot for status polling."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from agent_batch.engine.models import default_progress
from agent_batch.engine.storage import load_json, unlink_missing_ok, write_json_atomic

logger = logging.getLogger(__name__)


class ProgressTracker:
    """Coarse snapshot of the current run; the task store stays authoritative."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return default_progress()
        try:
            return load_json(self.path)
        except (OSError, TypeError, ValueError):
            logger.warning("Ignoring unreadable progress snapshot %s", self.path)
            return default_progress()

    def save(self, snapshot: dict[str, Any]) -> None:
        try:
            write_json_atomic(self.path, snapshot)
        except OSError as error:
            logger.warning("Could not write progress snapshot %s: %s", self.path, error)

    def clear(self) -> None:
        unlink_missing_ok(self.path)
