"""Bounded-concurrency batch scheduler over a three-stage task pipeline."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import Counter
from collections.abc import Awaitable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, TypeVar

from agent_batch.engine.errors import BatchError, TaskNotFoundError, TaskStateError
from agent_batch.engine.invocation import TIMEOUT_ERROR, ProcessInvoker
from agent_batch.engine.models import (
    BatchResult,
    FailedTaskRef,
    ProcessResult,
    RunSummary,
    TaskItem,
    TaskState,
    TaskStatus,
)
from agent_batch.engine.progress import ProgressTracker
from agent_batch.engine.retry import Invoker, Sleep, execute_with_retry
from agent_batch.engine.storage import load_json, utc_now, write_json_atomic
from agent_batch.engine.task_store import TaskStore

STATE_SUBDIR = ".agent-batch"

DEFAULT_CONCURRENCY = 6
DEFAULT_TIMEOUT_MS = 1_800_000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 5_000

_LOG_FORMAT = "[%(asctime)s] %(message)s"
_LOG_DATEFMT = "%H:%M:%S"

T = TypeVar("T")


class Pipeline(Protocol):
    """Domain plug-in driven by the scheduler. Each hook may be sync or async."""

    def discover(self, root_dir: Path) -> Sequence[TaskItem] | Awaitable[Sequence[TaskItem]]:
        """Enumerate work items in a stable order with stable ids."""

    def build_input(self, item: TaskItem) -> str | Awaitable[str]:
        """Produce the stdin payload for one item."""

    def interpret_result(
        self,
        item: TaskItem,
        result: ProcessResult,
    ) -> Mapping[str, Any] | Awaitable[Mapping[str, Any]]:
        """Validate tool output, apply side effects, and return a status mapping."""


@dataclass(slots=True)
class RunOptions:
    """Per-run switches."""

    resume: bool = False
    root_dir: Path = field(default_factory=Path.cwd)


@dataclass(slots=True)
class StatePaths:
    """Files owned by one named batch."""

    root: Path
    log: Path
    progress: Path
    result: Path
    tasks: Path

    @classmethod
    def for_name(cls, state_dir: Path, name: str) -> StatePaths:
        root = state_dir / STATE_SUBDIR
        return cls(
            root=root,
            log=root / f".{name}.log",
            progress=root / f"{name}-progress.json",
            result=root / f"{name}-result.json",
            tasks=root / f"{name}-tasks.json",
        )


@dataclass(slots=True)
class _ItemOutcome:
    item_id: str
    status: TaskStatus
    error: str | None
    result: dict[str, Any]


class BatchScheduler:
    """Runs a pipeline's items through the worker tool with durable per-task state.

    Admission follows discovery order; at most ``concurrency`` items are in the
    spawn/retry phase at once. Every task store mutation is serialized through
    one lock and written through before the next one starts, so a crash between
    any two completions loses nothing but in-flight work.
    """

    def __init__(  # noqa: PLR0913
        self,
        name: str,
        *,
        state_dir: Path | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        logger: logging.Logger | None = None,
        invoker: Invoker | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not name:
            raise ValueError("Batch name must not be empty.")
        self.name = name
        self.concurrency = max(1, concurrency)
        self.timeout_ms = timeout_ms
        self.max_retries = max(0, max_retries)
        self.retry_delay_ms = max(0, retry_delay_ms)
        self.paths = StatePaths.for_name(Path(state_dir or Path.cwd()), name)
        if logger is None:
            logger = logging.getLogger(f"{__name__}.{name}")
        self.logger = logger
        self.invoker: Invoker = invoker or ProcessInvoker()
        self._sleep = sleep
        self.store = TaskStore(self.paths.tasks, name)
        self.progress = ProgressTracker(self.paths.progress)
        self._store_lock = asyncio.Lock()

    # -- read-only queries -----------------------------------------------------

    def status(self) -> dict[str, Any]:
        return self.store.status()

    def list_failed(self) -> list[TaskState]:
        states = self.store.load()
        return [
            state
            for state in states.values()
            if state.status in (TaskStatus.FAILED, TaskStatus.TIMEOUT)
        ]

    def read_result(self) -> dict[str, Any] | None:
        if not self.paths.result.exists():
            return None
        return load_json(self.paths.result)

    # -- execution -------------------------------------------------------------

    def run_sync(self, pipeline: Pipeline, options: RunOptions | None = None) -> BatchResult:
        return asyncio.run(self.run(pipeline, options))

    async def run(self, pipeline: Pipeline, options: RunOptions | None = None) -> BatchResult:
        """Discover items, run the pending ones, and write the final result file."""

        options = options or RunOptions()
        root_dir = Path(options.root_dir)
        self._store_lock = asyncio.Lock()
        self.paths.root.mkdir(parents=True, exist_ok=True)

        with self._run_log():
            self.logger.info("Started: %s", self.name)
            self.logger.info("Concurrency: %d", self.concurrency)

            items = list(await _resolve(pipeline.discover(root_dir)))
            _ensure_unique_ids(items)
            self.logger.info("Discovered: %d items", len(items))

            if options.resume:
                await asyncio.to_thread(self.store.load)
                await asyncio.to_thread(self.store.ensure, items)
                states = self.store.states
                to_run = [item for item in items if states[item.id].status != TaskStatus.COMPLETED]
                self.logger.info(
                    "Resuming: %d completed item(s) skipped",
                    len(items) - len(to_run),
                )
            else:
                await asyncio.to_thread(self.store.reset, items)
                to_run = items

            progress: dict[str, Any] = {
                "status": "running",
                "startedAt": utc_now().isoformat(),
                "items": [item.to_dict() for item in to_run],
                "completed": [],
                "results": [],
            }
            await asyncio.to_thread(self.progress.save, progress)

            self.logger.info("Processing %d items...", len(to_run))
            outcomes = await self._run_pool(pipeline, to_run, root_dir, progress)

            result = BatchResult(
                name=self.name,
                completed_at=utc_now().isoformat(),
                processed=len(outcomes),
                skipped=len(items) - len(to_run),
                by_status=dict(
                    Counter(str(o.result.get("status", o.status.value)) for o in outcomes),
                ),
                failed_list=[
                    FailedTaskRef(id=o.item_id, reason=o.error)
                    for o in outcomes
                    if o.status != TaskStatus.COMPLETED
                ],
                summary=RunSummary.from_states(self.store.states.values()),
            )
            self.logger.info("Summary: %d processed", result.processed)
            for status, count in result.by_status.items():
                self.logger.info("  %s: %d", status, count)

            await asyncio.to_thread(write_json_atomic, self.paths.result, result.to_dict())
            self.logger.info("Result: %s", self.paths.result)
            await asyncio.to_thread(self.progress.clear)
            self.logger.info("Completed")
            return result

    async def retry_task(
        self,
        task_id: str,
        pipeline: Pipeline,
        root_dir: Path | None = None,
    ) -> dict[str, Any]:
        """Re-run one failed or timed-out task rebuilt from its persisted context.

        Handler exceptions are recorded on the task and re-raised.
        """

        self._store_lock = asyncio.Lock()
        self.paths.root.mkdir(parents=True, exist_ok=True)
        with self._run_log():
            await asyncio.to_thread(self.store.load)
            state = self.store.get(task_id)
            if state is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            if state.status not in (TaskStatus.FAILED, TaskStatus.TIMEOUT):
                raise TaskStateError(f"Task {task_id} is not failed (status: {state.status.value})")

            item = (
                TaskItem.from_dict(state.context)
                if state.context
                else TaskItem(id=task_id, path="")
            )
            self.logger.info("Retrying task: %s", task_id)
            outcome = await self._run_item(
                pipeline,
                item,
                Path(root_dir or Path.cwd()),
                label="retry",
                retry_count=state.retry_count + 1,
                reraise=True,
            )
            return outcome.result

    async def _run_pool(
        self,
        pipeline: Pipeline,
        items: Sequence[TaskItem],
        root_dir: Path,
        progress: dict[str, Any],
    ) -> list[_ItemOutcome]:
        total = len(items)
        admission = iter(enumerate(items, start=1))
        outcomes: dict[str, _ItemOutcome] = {}

        async def worker() -> None:
            # Shared iterator: a freed worker claims the next item in discovery order.
            for index, item in admission:
                outcome = await self._run_item(
                    pipeline,
                    item,
                    root_dir,
                    label=f"{index}/{total}",
                )
                outcomes[item.id] = outcome
                await self._record_progress(progress, outcome)

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, total))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        return [outcomes[item.id] for item in items]

    async def _run_item(  # noqa: PLR0913
        self,
        pipeline: Pipeline,
        item: TaskItem,
        root_dir: Path,
        *,
        label: str,
        retry_count: int | None = None,
        reraise: bool = False,
    ) -> _ItemOutcome:
        started_at = utc_now()
        running: dict[str, Any] = {
            "status": TaskStatus.RUNNING,
            "started_at": started_at.isoformat(),
            "completed_at": None,
            "duration_ms": None,
            "error": None,
            "partial_output": None,
        }
        if retry_count is not None:
            running["retry_count"] = retry_count
        await self._update(item.id, **running)
        self.logger.info("[%s] Processing: %s", label, item.id)

        try:
            input_text = await _resolve(pipeline.build_input(item))
            process_result = await execute_with_retry(
                self.invoker,
                input_text,
                root_dir,
                self.timeout_ms,
                self.max_retries,
                self.retry_delay_ms,
                sleep=self._sleep,
            )
            raw_outcome = await _resolve(pipeline.interpret_result(item, process_result))
            if not isinstance(raw_outcome, Mapping):
                raise TypeError(
                    f"interpret_result must return a mapping, got {type(raw_outcome).__name__}",
                )
            outcome = _json_safe(raw_outcome)
            status, error = resolve_final_status(process_result, outcome)
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            completed_at = utc_now()
            await self._update(
                item.id,
                status=TaskStatus.FAILED,
                completed_at=completed_at.isoformat(),
                duration_ms=_elapsed_ms(started_at, completed_at),
                error=message,
            )
            self.logger.info("  -> Error: %s - %s", item.id, message)
            if reraise:
                raise
            return _ItemOutcome(
                item_id=item.id,
                status=TaskStatus.FAILED,
                error=message,
                result={"status": "error", "reason": message},
            )

        completed_at = utc_now()
        changes: dict[str, Any] = {
            "status": status,
            "completed_at": completed_at.isoformat(),
            "duration_ms": _elapsed_ms(started_at, completed_at),
            "session_id": process_result.session_id,
            "result": outcome,
            "error": error,
        }
        if status == TaskStatus.TIMEOUT and process_result.output:
            changes["partial_output"] = process_result.output
        await self._update(item.id, **changes)
        self.logger.info("  -> %s: %s", outcome.get("status", status.value), item.id)
        return _ItemOutcome(item_id=item.id, status=status, error=error, result=outcome)

    async def _update(self, task_id: str, **changes: Any) -> TaskState:
        async with self._store_lock:
            return await asyncio.to_thread(self.store.update, task_id, **changes)

    async def _record_progress(self, progress: dict[str, Any], outcome: _ItemOutcome) -> None:
        async with self._store_lock:
            progress["completed"].append(outcome.item_id)
            progress["results"].append({"id": outcome.item_id, **outcome.result})
            await asyncio.to_thread(self.progress.save, progress)

    @contextmanager
    def _run_log(self) -> Iterator[None]:
        self.paths.root.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.paths.log, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATEFMT))
        self.logger.addHandler(handler)
        # The run log records INFO even when the process-wide level is higher.
        previous_level = self.logger.level
        if not self.logger.isEnabledFor(logging.INFO):
            self.logger.setLevel(logging.INFO)
        try:
            yield
        finally:
            self.logger.setLevel(previous_level)
            self.logger.removeHandler(handler)
            handler.close()


def resolve_final_status(
    process_result: ProcessResult,
    outcome: Mapping[str, Any],
) -> tuple[TaskStatus, str | None]:
    """Merge the process-level outcome with the handler's own verdict."""

    if process_result.error == TIMEOUT_ERROR:
        status = TaskStatus.TIMEOUT
    elif _outcome_failed(outcome):
        status = TaskStatus.FAILED
    else:
        return TaskStatus.COMPLETED, None

    reason = outcome.get("reason")
    error = process_result.error or (str(reason) if reason else None)
    if error is None:
        error = str(outcome.get("status", status.value))
    return status, error


def _outcome_failed(outcome: Mapping[str, Any]) -> bool:
    status = outcome.get("status")
    if isinstance(status, str) and "error" in status:
        return True
    return outcome.get("success") is False


def _ensure_unique_ids(items: Sequence[TaskItem]) -> None:
    duplicates = sorted(key for key, count in Counter(item.id for item in items).items() if count > 1)
    if duplicates:
        raise BatchError(f"Discovered duplicate task ids: {', '.join(duplicates)}")


def _json_safe(outcome: Mapping[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(dict(outcome), default=str))


def _elapsed_ms(started_at: datetime, completed_at: datetime) -> int:
    return int((completed_at - started_at).total_seconds() * 1000)


async def _resolve(value: T | Awaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value
