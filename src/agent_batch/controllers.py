"""Controllers for batch CLI commands."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path

from agent_batch.config import Settings
from agent_batch.engine.scheduler import BatchScheduler, RunOptions
from agent_batch.pipelines.code_audit import PIPELINE_NAME, CodeAuditPipeline

NO_AUDIT_RESULT = "No audit result found."


@dataclass(slots=True)
class AuditRunCommand:
    """CLI input for a code audit batch run."""

    root_dir: Path
    state_dir: Path | None
    resume: bool
    concurrency: int | None = None
    timeout_ms: int | None = None


@dataclass(slots=True)
class AuditShowResultCommand:
    """CLI input for printing the last audit result file."""

    state_dir: Path | None


@dataclass(slots=True)
class AuditRetryCommand:
    """CLI input for re-running one failed audit task."""

    task_id: str
    root_dir: Path
    state_dir: Path | None


@dataclass(slots=True)
class BatchStatusCommand:
    """CLI input for task store status of a named batch."""

    name: str
    state_dir: Path | None


@dataclass(slots=True)
class ListFailedCommand:
    """CLI input for failed/timeout task listing."""

    name: str
    state_dir: Path | None


class BatchCliController:
    """Coordinates batch runs, single-task retries and state inspection."""

    def run_audit(self, command: AuditRunCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        if command.concurrency is not None:
            settings.scheduler.concurrency = command.concurrency
        if command.timeout_ms is not None:
            settings.scheduler.timeout_ms = command.timeout_ms
        settings.validate()

        scheduler = _scheduler(settings, PIPELINE_NAME)
        result = scheduler.run_sync(
            CodeAuditPipeline(),
            RunOptions(resume=command.resume, root_dir=command.root_dir),
        )

        lines = [
            "Audit finished: "
            f"status={result.status} processed={result.processed} "
            f"skipped={result.skipped} failed={result.failed}",
        ]
        lines.extend(f"  {status}: {count}" for status, count in sorted(result.by_status.items()))
        lines.extend(f"  failed {ref.id}: {ref.reason}" for ref in result.failed_list)
        lines.append(f"Result: {scheduler.paths.result}")
        return lines

    def show_audit_result(self, command: AuditShowResultCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        scheduler = _scheduler(settings, PIPELINE_NAME)
        if not scheduler.paths.result.exists():
            return [NO_AUDIT_RESULT]
        return scheduler.paths.result.read_text("utf-8").rstrip("\n").splitlines()

    def retry_audit_task(self, command: AuditRetryCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        settings.validate()
        scheduler = _scheduler(settings, PIPELINE_NAME)
        outcome = asyncio.run(
            scheduler.retry_task(command.task_id, CodeAuditPipeline(), command.root_dir),
        )
        state = scheduler.store.get(command.task_id)
        status = state.status.value if state is not None else "unknown"
        return [
            f"Task retried: task_id={command.task_id} status={status}",
            json.dumps(outcome, ensure_ascii=False, sort_keys=True),
        ]

    def status(self, command: BatchStatusCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        payload = _scheduler(settings, command.name).status()
        return json.dumps(payload, ensure_ascii=False, indent=2).splitlines()

    def list_failed(self, command: ListFailedCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        failed = _scheduler(settings, command.name).list_failed()
        if not failed:
            return [f"No failed tasks for {command.name}."]
        return [
            f"{state.id} status={state.status.value} retries={state.retry_count} "
            f"session={state.session_id or '-'} error={state.error or '-'}"
            for state in failed
        ]


def _scheduler(settings: Settings, name: str) -> BatchScheduler:
    return BatchScheduler(
        name,
        state_dir=settings.state_dir,
        concurrency=settings.scheduler.concurrency,
        timeout_ms=settings.scheduler.timeout_ms,
        max_retries=settings.scheduler.max_retries,
        retry_delay_ms=settings.scheduler.retry_delay_ms,
        invoker=settings.worker.build_invoker(),
    )
