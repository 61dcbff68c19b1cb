"""Engine exception hierarchy."""

from __future__ import annotations


class BatchError(RuntimeError):
    """Base class for batch engine failures."""


class TaskStoreError(BatchError):
    """Task store could not be read or written; the run cannot continue."""

    def __init__(self, message: str, *, path: object) -> None:
        super().__init__(message)
        self.path = path


class TaskStateError(BatchError):
    """Illegal task lifecycle transition or operation on a task in the wrong state."""


class TaskNotFoundError(BatchError):
    """Task id is unknown to the task store."""
