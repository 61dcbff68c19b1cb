"""Durable per-task lifecycle state backed by one JSON file."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from agent_batch.engine.errors import TaskStoreError
from agent_batch.engine.models import RunSummary, TaskItem, TaskState, TaskStatus
from agent_batch.engine.storage import load_json, utc_now_iso, write_json_atomic

logger = logging.getLogger(__name__)


class TaskStore:
    """Single-writer task state map persisted on every mutation.

    The file layout is ``{name, updatedAt, summary, tasks: [...]}``; ``summary``
    is always recomputed from ``tasks`` on save. Any I/O or decoding failure is
    raised as :class:`TaskStoreError`, since a batch must not continue without
    durable bookkeeping.
    """

    def __init__(self, path: Path, name: str) -> None:
        self.path = path
        self.name = name
        self._states: dict[str, TaskState] = {}
        self._lock = threading.Lock()

    @property
    def states(self) -> dict[str, TaskState]:
        with self._lock:
            return dict(self._states)

    def get(self, task_id: str) -> TaskState | None:
        with self._lock:
            return self._states.get(task_id)

    def load(self) -> dict[str, TaskState]:
        """Read persisted states; a missing file yields an empty map."""

        if not self.path.exists():
            loaded: dict[str, TaskState] = {}
        else:
            try:
                payload = load_json(self.path)
                loaded = {
                    state.id: state
                    for state in (TaskState.from_dict(raw) for raw in payload.get("tasks", []))
                }
            except (OSError, TypeError, ValueError, KeyError) as error:
                raise TaskStoreError(
                    f"Cannot read task store {self.path}: {error}",
                    path=self.path,
                ) from error
        with self._lock:
            self._states = dict(loaded)
        logger.debug("Loaded %d task states from %s", len(loaded), self.path)
        return loaded

    def save(self, states: Mapping[str, TaskState] | None = None) -> RunSummary:
        """Persist ``states`` (or the in-memory map) and return the derived summary."""

        with self._lock:
            if states is not None:
                self._states = dict(states)
            return self._write_locked()

    def update(self, task_id: str, **changes: Any) -> TaskState:
        """Merge ``changes`` onto the task's record and persist before returning."""

        with self._lock:
            existing = self._states.get(task_id) or TaskState(id=task_id)
            merged = existing.merge(changes)
            self._states[task_id] = merged
            self._write_locked()
            return merged

    def reset(self, items: Iterable[TaskItem]) -> RunSummary:
        """Start a fresh run: replace every record with a pending one per item."""

        with self._lock:
            self._states = {
                item.id: TaskState(id=item.id, status=TaskStatus.PENDING, context=item.to_dict())
                for item in items
            }
            return self._write_locked()

    def ensure(self, items: Iterable[TaskItem]) -> RunSummary:
        """Add pending records for items not seen before, keeping existing ones."""

        with self._lock:
            for item in items:
                if item.id not in self._states:
                    self._states[item.id] = TaskState(
                        id=item.id,
                        status=TaskStatus.PENDING,
                        context=item.to_dict(),
                    )
            return self._write_locked()

    def status(self) -> dict[str, Any]:
        """Cheap peek at the persisted file for external status queries."""

        if not self.path.exists():
            return {"status": "never_run", "name": self.name}
        try:
            return load_json(self.path)
        except (OSError, TypeError, ValueError) as error:
            raise TaskStoreError(
                f"Cannot read task store {self.path}: {error}",
                path=self.path,
            ) from error

    def _write_locked(self) -> RunSummary:
        tasks = list(self._states.values())
        summary = RunSummary.from_states(tasks)
        payload = {
            "name": self.name,
            "updatedAt": utc_now_iso(),
            "summary": summary.to_dict(),
            "tasks": [state.to_dict() for state in tasks],
        }
        try:
            write_json_atomic(self.path, payload)
        except (OSError, TypeError, ValueError) as error:
            raise TaskStoreError(
                f"Cannot write task store {self.path}: {error}",
                path=self.path,
            ) from error
        return summary
