from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import allure
import pytest

from agent_batch.engine.errors import (
    BatchError,
    TaskNotFoundError,
    TaskStateError,
    TaskStoreError,
)
from agent_batch.engine.models import ProcessResult, TaskItem, TaskStatus
from agent_batch.engine.scheduler import BatchScheduler, RunOptions, resolve_final_status

pytestmark = [
    allure.epic("Batch Engine"),
    allure.feature("Batch Scheduler"),
]

_LLM_FAILURE = ProcessResult(success=False, output="", error="exit code 1")


class ListPipeline:
    """Items named by id; the item id is also the tool input."""

    def __init__(self, ids, *, boom=()) -> None:
        self.ids = list(ids)
        self.boom = set(boom)
        self.progress_seen: list[dict] = []

    def discover(self, root_dir: Path) -> list[TaskItem]:
        return [TaskItem(id=task_id, path=str(root_dir / task_id)) for task_id in self.ids]

    def build_input(self, item: TaskItem) -> str:
        return item.id

    def interpret_result(self, item: TaskItem, result: ProcessResult) -> dict:
        if item.id in self.boom:
            raise RuntimeError("boom")
        if not result.success:
            return {"status": "llm_error", "reason": result.error}
        return {"status": "done", "answer": result.output}


class AsyncListPipeline(ListPipeline):
    async def discover(self, root_dir: Path) -> list[TaskItem]:
        await asyncio.sleep(0)
        return ListPipeline.discover(self, root_dir)

    async def build_input(self, item: TaskItem) -> str:
        return item.id

    async def interpret_result(self, item: TaskItem, result: ProcessResult) -> dict:
        await asyncio.sleep(0)
        return ListPipeline.interpret_result(self, item, result)


def _scheduler(tmp_path: Path, invoker, recording_sleep, **kwargs) -> BatchScheduler:
    kwargs.setdefault("concurrency", 2)
    kwargs.setdefault("max_retries", 0)
    kwargs.setdefault("retry_delay_ms", 10)
    return BatchScheduler(
        "demo",
        state_dir=tmp_path,
        invoker=invoker,
        sleep=recording_sleep,
        **kwargs,
    )


def test_run_completes_items_and_writes_result(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    invoker = scripted_invoker()
    scheduler = _scheduler(tmp_path, invoker, recording_sleep)

    result = scheduler.run_sync(ListPipeline(["a", "b", "c"]), RunOptions(root_dir=tmp_path))

    assert result.status == "success"
    assert result.processed == 3
    assert result.by_status == {"done": 3}
    assert result.summary.completed == 3
    state_root = tmp_path / ".agent-batch"
    persisted = json.loads((state_root / "demo-result.json").read_text("utf-8"))
    assert persisted["status"] == "success"
    assert persisted["failed"] == 0
    assert persisted["byStatus"] == {"done": 3}
    assert not (state_root / "demo-progress.json").exists()
    tasks = json.loads((state_root / "demo-tasks.json").read_text("utf-8"))
    assert tasks["summary"]["completed"] == 3
    assert all(task["durationMs"] >= 0 for task in tasks["tasks"])
    log_text = (state_root / ".demo.log").read_text("utf-8")
    assert "Started: demo" in log_text
    assert "Completed" in log_text


def test_pool_never_exceeds_concurrency_and_admits_in_order(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    ids = [f"item-{index}" for index in range(5)]
    invoker = scripted_invoker(delay=0.05)
    scheduler = _scheduler(tmp_path, invoker, recording_sleep, concurrency=2)

    result = scheduler.run_sync(ListPipeline(ids), RunOptions(root_dir=tmp_path))

    assert invoker.max_in_flight == 2
    assert invoker.calls == ids
    assert result.processed == 5


def test_handler_exception_marks_task_failed_without_aborting(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    ids = ["a", "b", "c", "d", "e"]
    scheduler = _scheduler(tmp_path, scripted_invoker(), recording_sleep)

    result = scheduler.run_sync(ListPipeline(ids, boom={"c"}), RunOptions(root_dir=tmp_path))

    assert result.status == "completed_with_errors"
    assert result.by_status == {"done": 4, "error": 1}
    assert [(ref.id, ref.reason) for ref in result.failed_list] == [("c", "boom")]
    assert result.summary.total == 5
    state = scheduler.store.get("c")
    assert state.status == TaskStatus.FAILED
    assert state.error == "boom"


def test_llm_failure_status_is_failed_with_process_error(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    invoker = scripted_invoker({"b": _LLM_FAILURE})
    scheduler = _scheduler(tmp_path, invoker, recording_sleep, max_retries=2)

    result = scheduler.run_sync(ListPipeline(["a", "b"]), RunOptions(root_dir=tmp_path))

    assert invoker.calls.count("b") == 3
    assert recording_sleep.delays == [0.01, 0.02]
    assert result.by_status == {"done": 1, "llm_error": 1}
    state = scheduler.store.get("b")
    assert state.status == TaskStatus.FAILED
    assert state.error == "exit code 1"
    assert state.result == {"status": "llm_error", "reason": "exit code 1"}


def test_timeout_is_recorded_with_partial_output(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    timed_out = ProcessResult(
        success=False,
        output="half an answer",
        session_id="s-slow",
        error="timeout",
    )
    scheduler = _scheduler(tmp_path, scripted_invoker({"slow": timed_out}), recording_sleep)

    result = scheduler.run_sync(ListPipeline(["slow"]), RunOptions(root_dir=tmp_path))

    state = scheduler.store.get("slow")
    assert state.status == TaskStatus.TIMEOUT
    assert state.error == "timeout"
    assert state.partial_output == "half an answer"
    assert state.session_id == "s-slow"
    assert result.summary.timeout == 1
    assert [task.id for task in scheduler.list_failed()] == ["slow"]


def test_resume_skips_completed_items(tmp_path: Path, scripted_invoker, recording_sleep) -> None:
    first = _scheduler(tmp_path, scripted_invoker({"b": _LLM_FAILURE}), recording_sleep)
    first.run_sync(ListPipeline(["a", "b", "c"]), RunOptions(root_dir=tmp_path))

    invoker = scripted_invoker()
    second = _scheduler(tmp_path, invoker, recording_sleep)
    result = second.run_sync(
        ListPipeline(["a", "b", "c", "d"]),
        RunOptions(resume=True, root_dir=tmp_path),
    )

    assert invoker.calls == ["b", "d"]
    assert result.skipped == 2
    assert result.processed == 2
    assert result.summary.completed == 4


def test_resume_reruns_items_left_running_by_a_crash(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker(), recording_sleep)
    scheduler.store.reset([TaskItem(id="a", path=""), TaskItem(id="b", path="")])
    scheduler.store.update("a", status="running")
    scheduler.store.update("a", status="completed")
    scheduler.store.update("b", status="running")

    invoker = scripted_invoker()
    resumed = _scheduler(tmp_path, invoker, recording_sleep)
    resumed.run_sync(ListPipeline(["a", "b"]), RunOptions(resume=True, root_dir=tmp_path))

    assert invoker.calls == ["b"]
    assert resumed.store.get("b").status == TaskStatus.COMPLETED


def test_fresh_run_resets_previous_state(tmp_path: Path, scripted_invoker, recording_sleep) -> None:
    _scheduler(tmp_path, scripted_invoker(), recording_sleep).run_sync(
        ListPipeline(["a", "b"]),
        RunOptions(root_dir=tmp_path),
    )

    invoker = scripted_invoker()
    result = _scheduler(tmp_path, invoker, recording_sleep).run_sync(
        ListPipeline(["a", "b"]),
        RunOptions(root_dir=tmp_path),
    )

    assert invoker.calls == ["a", "b"]
    assert result.skipped == 0


def test_progress_snapshot_tracks_completed_items(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker(), recording_sleep, concurrency=1)

    class SnoopingPipeline(ListPipeline):
        def interpret_result(self, item, result):
            self.progress_seen.append(scheduler.progress.load())
            return super().interpret_result(item, result)

    pipeline = SnoopingPipeline(["a", "b", "c"])
    scheduler.run_sync(pipeline, RunOptions(root_dir=tmp_path))

    last = pipeline.progress_seen[-1]
    assert last["status"] == "running"
    assert [item["id"] for item in last["items"]] == ["a", "b", "c"]
    assert last["completed"] == ["a", "b"]
    assert [entry["id"] for entry in last["results"]] == ["a", "b"]
    assert "startedAt" in last
    assert scheduler.progress.load()["status"] == "idle"


def test_async_pipeline_hooks_are_awaited(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker(), recording_sleep)
    result = scheduler.run_sync(AsyncListPipeline(["a", "b"]), RunOptions(root_dir=tmp_path))

    assert result.by_status == {"done": 2}


def test_duplicate_ids_are_rejected(tmp_path: Path, scripted_invoker, recording_sleep) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker(), recording_sleep)

    with pytest.raises(BatchError, match="duplicate"):
        scheduler.run_sync(ListPipeline(["a", "b", "a"]), RunOptions(root_dir=tmp_path))


def test_store_failure_aborts_run(tmp_path: Path, scripted_invoker, recording_sleep) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker(delay=0.01), recording_sleep)
    original_update = scheduler.store.update

    def failing_update(task_id, **changes):
        if task_id == "c":
            raise TaskStoreError("disk full", path=scheduler.store.path)
        return original_update(task_id, **changes)

    scheduler.store.update = failing_update

    with pytest.raises(TaskStoreError, match="disk full"):
        scheduler.run_sync(ListPipeline(["a", "b", "c", "d"]), RunOptions(root_dir=tmp_path))
    assert not scheduler.paths.result.exists()


def test_status_and_list_failed_queries(tmp_path: Path, scripted_invoker, recording_sleep) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker({"b": _LLM_FAILURE}), recording_sleep)
    assert scheduler.status() == {"status": "never_run", "name": "demo"}
    assert scheduler.read_result() is None

    scheduler.run_sync(ListPipeline(["a", "b"]), RunOptions(root_dir=tmp_path))

    status = scheduler.status()
    assert status["summary"]["failed"] == 1
    assert status["summary"]["completed"] == 1
    assert [state.id for state in scheduler.list_failed()] == ["b"]
    assert scheduler.read_result()["failedList"] == [{"id": "b", "reason": "exit code 1"}]


def test_retry_task_reruns_failed_task(tmp_path: Path, scripted_invoker, recording_sleep) -> None:
    _scheduler(tmp_path, scripted_invoker({"b": _LLM_FAILURE}), recording_sleep).run_sync(
        ListPipeline(["a", "b"]),
        RunOptions(root_dir=tmp_path),
    )

    invoker = scripted_invoker()
    scheduler = _scheduler(tmp_path, invoker, recording_sleep)
    outcome = asyncio.run(scheduler.retry_task("b", ListPipeline([]), tmp_path))

    assert outcome == {"status": "done", "answer": "ok"}
    assert invoker.calls == ["b"]
    state = scheduler.store.get("b")
    assert state.status == TaskStatus.COMPLETED
    assert state.retry_count == 1
    assert state.error is None
    assert state.context["path"] == str(tmp_path / "b")


def test_retry_task_rejects_unknown_and_non_failed(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker(), recording_sleep)
    scheduler.run_sync(ListPipeline(["a"]), RunOptions(root_dir=tmp_path))

    with pytest.raises(TaskNotFoundError):
        asyncio.run(scheduler.retry_task("missing", ListPipeline([])))
    with pytest.raises(TaskStateError, match="not failed"):
        asyncio.run(scheduler.retry_task("a", ListPipeline([])))


def test_retry_task_records_and_reraises_handler_error(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker(), recording_sleep)
    scheduler.run_sync(ListPipeline(["a"], boom={"a"}), RunOptions(root_dir=tmp_path))

    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(scheduler.retry_task("a", ListPipeline([], boom={"a"}), tmp_path))

    state = scheduler.store.get("a")
    assert state.status == TaskStatus.FAILED
    assert state.retry_count == 1


def test_resolve_final_status_rules() -> None:
    ok = ProcessResult(success=True, output="x")
    assert resolve_final_status(ok, {"status": "audited"}) == (TaskStatus.COMPLETED, None)
    assert resolve_final_status(ok, {"status": "parse_error"}) == (
        TaskStatus.FAILED,
        "parse_error",
    )
    assert resolve_final_status(ok, {"success": False, "reason": "bad"}) == (
        TaskStatus.FAILED,
        "bad",
    )
    timed_out = ProcessResult(success=False, output="", error="timeout")
    assert resolve_final_status(timed_out, {"status": "llm_error"}) == (
        TaskStatus.TIMEOUT,
        "timeout",
    )


def test_unserializable_outcome_fails_only_that_item(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    class BadKeyPipeline(ListPipeline):
        def interpret_result(self, item, result):
            if item.id == "x":
                return {("bad", "key"): 1, "status": "done"}
            return super().interpret_result(item, result)

    invoker = scripted_invoker()
    scheduler = _scheduler(tmp_path, invoker, recording_sleep, concurrency=1)

    result = scheduler.run_sync(BadKeyPipeline(["a", "x", "c"]), RunOptions(root_dir=tmp_path))

    assert invoker.calls == ["a", "x", "c"]
    assert scheduler.store.get("a").status == TaskStatus.COMPLETED
    assert scheduler.store.get("c").status == TaskStatus.COMPLETED
    state = scheduler.store.get("x")
    assert state.status == TaskStatus.FAILED
    assert state.error
    assert [ref.id for ref in result.failed_list] == ["x"]
    assert scheduler.paths.result.exists()


def test_run_log_does_not_leave_logger_level_changed(
    tmp_path: Path,
    scripted_invoker,
    recording_sleep,
) -> None:
    scheduler = _scheduler(tmp_path, scripted_invoker(), recording_sleep)
    assert scheduler.logger.level == logging.NOTSET

    scheduler.run_sync(ListPipeline(["a"]), RunOptions(root_dir=tmp_path))

    assert scheduler.logger.level == logging.NOTSET
    assert "Processing: a" in scheduler.paths.log.read_text("utf-8")
