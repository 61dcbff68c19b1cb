"""Crash-resumable batch engine for an external CLI worker tool.

Why not a generic task queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The work here is one long-running subprocess per item, minutes to an hour
each, on a single machine. What matters is the boundary with that tool:
stdin/stdout contract, timeout enforcement, transient vs. deterministic
failure classification, and per-task state that survives a crash between
any two completions. A JSON task file written through on every mutation is
enough bookkeeping for a single writer; a broker would add an operational
dependency without removing any of the above.
"""

from agent_batch.engine.errors import (
    BatchError,
    TaskNotFoundError,
    TaskStateError,
    TaskStoreError,
)
from agent_batch.engine.invocation import ProcessInvoker
from agent_batch.engine.models import (
    BatchResult,
    ProcessResult,
    RunSummary,
    TaskItem,
    TaskState,
    TaskStatus,
)
from agent_batch.engine.progress import ProgressTracker
from agent_batch.engine.retry import execute_with_retry
from agent_batch.engine.scheduler import BatchScheduler, Pipeline, RunOptions
from agent_batch.engine.task_store import TaskStore

__all__ = [
    "BatchError",
    "BatchResult",
    "BatchScheduler",
    "Pipeline",
    "ProcessInvoker",
    "ProcessResult",
    "ProgressTracker",
    "RunOptions",
    "RunSummary",
    "TaskItem",
    "TaskNotFoundError",
    "TaskState",
    "TaskStateError",
    "TaskStatus",
    "TaskStore",
    "TaskStoreError",
    "execute_with_retry",
]
