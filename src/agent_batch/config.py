"""Runtime configuration for the batch engine and its worker tool."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from agent_batch.engine.invocation import (
    DEFAULT_BACKEND,
    DEFAULT_COMMAND,
    DEFAULT_TIMEOUT_ENV_VAR,
    ProcessInvoker,
)
from agent_batch.engine.scheduler import (
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY_MS,
    DEFAULT_TIMEOUT_MS,
)


@dataclass(slots=True)
class WorkerToolSettings:
    """How the external worker tool is launched."""

    command: tuple[str, ...] = DEFAULT_COMMAND
    backend: str = DEFAULT_BACKEND
    timeout_env_var: str = DEFAULT_TIMEOUT_ENV_VAR

    def build_invoker(self) -> ProcessInvoker:
        return ProcessInvoker(
            command=self.command,
            backend=self.backend,
            timeout_env_var=self.timeout_env_var,
        )


@dataclass(slots=True)
class SchedulerSettings:
    """Pool size, per-attempt timeout and retry policy."""

    concurrency: int = DEFAULT_CONCURRENCY
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    state_dir: Path = field(default_factory=Path.cwd)
    worker: WorkerToolSettings = field(default_factory=WorkerToolSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to local runs."""

        return cls(
            state_dir=state_dir or Path(os.getenv("AGENT_BATCH_STATE_DIR", str(Path.cwd()))),
            worker=WorkerToolSettings(
                command=_env_command("AGENT_BATCH_COMMAND", default=DEFAULT_COMMAND),
                backend=(
                    os.getenv("AGENT_BATCH_BACKEND", "").strip()
                    or os.getenv("CODEAGENT_BACKEND", "").strip()
                    or DEFAULT_BACKEND
                ),
                timeout_env_var=os.getenv("AGENT_BATCH_TIMEOUT_ENV_VAR", DEFAULT_TIMEOUT_ENV_VAR),
            ),
            scheduler=SchedulerSettings(
                concurrency=_env_int("AGENT_BATCH_CONCURRENCY", DEFAULT_CONCURRENCY),
                timeout_ms=_env_int("AGENT_BATCH_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
                max_retries=_env_int("AGENT_BATCH_MAX_RETRIES", DEFAULT_MAX_RETRIES),
                retry_delay_ms=_env_int("AGENT_BATCH_RETRY_DELAY_MS", DEFAULT_RETRY_DELAY_MS),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.scheduler.concurrency <= 0:
            raise ValueError("AGENT_BATCH_CONCURRENCY must be > 0.")
        if self.scheduler.timeout_ms <= 0:
            raise ValueError("AGENT_BATCH_TIMEOUT_MS must be > 0.")
        if self.scheduler.max_retries < 0:
            raise ValueError("AGENT_BATCH_MAX_RETRIES must be >= 0.")
        if self.scheduler.retry_delay_ms < 0:
            raise ValueError("AGENT_BATCH_RETRY_DELAY_MS must be >= 0.")
        if not self.worker.command:
            raise ValueError("AGENT_BATCH_COMMAND must name an executable.")
        if not self.worker.timeout_env_var.strip():
            raise ValueError("AGENT_BATCH_TIMEOUT_ENV_VAR must not be empty.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_command(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(shlex.split(raw))
