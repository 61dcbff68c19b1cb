"""Domain models for batch task execution and persisted run state."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any

from agent_batch.engine.errors import TaskStateError


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})

# A resumed or retried failure re-enters RUNNING; nothing ever returns to PENDING.
_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PENDING, TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset({TaskStatus.RUNNING, *TERMINAL_STATUSES}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.FAILED: frozenset({TaskStatus.FAILED, TaskStatus.RUNNING}),
    TaskStatus.TIMEOUT: frozenset({TaskStatus.TIMEOUT, TaskStatus.RUNNING}),
}


@dataclass(frozen=True, slots=True)
class TaskItem:
    """Discovered unit of work."""

    id: str
    path: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "path": self.path, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TaskItem:
        return cls(
            id=str(raw["id"]),
            path=str(raw.get("path", "")),
            payload=dict(raw.get("payload") or {}),
        )


# Python attribute -> persisted JSON key.
_STATE_KEYS: dict[str, str] = {
    "id": "id",
    "status": "status",
    "error": "error",
    "session_id": "sessionId",
    "context": "context",
    "started_at": "startedAt",
    "completed_at": "completedAt",
    "duration_ms": "durationMs",
    "result": "result",
    "retry_count": "retryCount",
    "partial_output": "partialOutput",
}


@dataclass(frozen=True, slots=True)
class TaskState:
    """Persisted lifecycle record for one task item.

    Records are immutable; every mutation goes through :meth:`merge`, which
    overlays the given fields onto a copy and rejects transitions that would
    move a task backwards in its lifecycle.
    """

    id: str
    status: TaskStatus = TaskStatus.PENDING
    error: str | None = None
    session_id: str | None = None
    context: dict[str, Any] | None = None
    started_at: str | None = None
    completed_at: str | None = None
    duration_ms: int | None = None
    result: dict[str, Any] | None = None
    retry_count: int = 0
    partial_output: str | None = None

    def merge(self, changes: Mapping[str, Any]) -> TaskState:
        """Return a copy with ``changes`` applied.

        Keys are Python attribute names. ``id`` cannot change; ``status`` may be
        given as a :class:`TaskStatus` or its string value.
        """

        unknown = set(changes) - set(_STATE_KEYS)
        if unknown:
            raise TaskStateError(f"Unknown task state fields: {sorted(unknown)}")
        if "id" in changes and changes["id"] != self.id:
            raise TaskStateError(f"Task id is immutable: {self.id!r} -> {changes['id']!r}")

        normalized = dict(changes)
        if "status" in normalized:
            target = TaskStatus(normalized["status"])
            if target not in _ALLOWED_TRANSITIONS[self.status]:
                raise TaskStateError(
                    f"Illegal transition for task {self.id!r}: "
                    f"{self.status.value} -> {target.value}",
                )
            normalized["status"] = target
        return replace(self, **normalized)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with persisted camelCase keys, omitting unset optional fields."""

        payload: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None:
                continue
            if isinstance(value, TaskStatus):
                value = value.value
            payload[_STATE_KEYS[item.name]] = value
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TaskState:
        by_key = {key: attr for attr, key in _STATE_KEYS.items()}
        kwargs: dict[str, Any] = {}
        for key, value in raw.items():
            attr = by_key.get(key)
            if attr is None:
                continue
            kwargs[attr] = value
        kwargs["status"] = TaskStatus(kwargs.get("status", TaskStatus.PENDING.value))
        if kwargs.get("retry_count") is None:
            kwargs["retry_count"] = 0
        return cls(**kwargs)


@dataclass(slots=True)
class RunSummary:
    """Per-status counts derived from the task state map."""

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    timeout: int = 0

    @classmethod
    def from_states(cls, states: Iterable[TaskState]) -> RunSummary:
        summary = cls()
        for state in states:
            summary.total += 1
            name = state.status.value
            setattr(summary, name, getattr(summary, name) + 1)
        return summary

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "timeout": self.timeout,
        }


@dataclass(slots=True)
class ProcessResult:
    """Outcome of one process invocation, possibly after retries."""

    success: bool
    output: str
    session_id: str | None = None
    error: str | None = None
    is_rate_limited: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "sessionId": self.session_id,
            "error": self.error,
            "isRateLimited": self.is_rate_limited,
        }


def default_progress() -> dict[str, Any]:
    """Progress snapshot shape used when no run is in flight."""

    return {"status": "idle", "items": [], "completed": [], "results": []}


@dataclass(slots=True)
class FailedTaskRef:
    """One failed entry of the final batch report."""

    id: str
    reason: str | None


@dataclass(slots=True)
class BatchResult:
    """Final aggregate of one scheduler run."""

    name: str
    completed_at: str
    processed: int
    skipped: int
    by_status: dict[str, int]
    failed_list: list[FailedTaskRef]
    summary: RunSummary

    @property
    def failed(self) -> int:
        return len(self.failed_list)

    @property
    def status(self) -> str:
        return "success" if not self.failed_list else "completed_with_errors"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "completedAt": self.completed_at,
            "status": self.status,
            "processed": self.processed,
            "skipped": self.skipped,
            "byStatus": dict(self.by_status),
            "failed": self.failed,
            "failedList": [{"id": ref.id, "reason": ref.reason} for ref in self.failed_list],
            "summary": self.summary.to_dict(),
        }
