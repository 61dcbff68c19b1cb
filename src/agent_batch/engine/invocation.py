"""Single invocation of the external worker tool."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from agent_batch.engine.models import ProcessResult
from agent_batch.engine.rate_limit import classify_rate_limit

logger = logging.getLogger(__name__)

DEFAULT_COMMAND: tuple[str, ...] = ("codeagent-wrapper",)
DEFAULT_BACKEND = "codex"
DEFAULT_TIMEOUT_ENV_VAR = "CODEX_TIMEOUT"

TIMEOUT_ERROR = "timeout"
EMPTY_OUTPUT_ERROR = "empty output"

_SESSION_ID = re.compile(r"SESSION_ID:\s*([A-Za-z0-9_.:-]+)")
_READ_CHUNK_BYTES = 64 * 1024


@dataclass(slots=True)
class _StreamCapture:
    """Incrementally accumulated stdout/stderr of one child process."""

    stdout_parts: list[str] = field(default_factory=list)
    stderr_parts: list[str] = field(default_factory=list)
    session_id: str | None = None
    _stderr_tail: str = ""

    @property
    def stdout(self) -> str:
        return "".join(self.stdout_parts)

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_parts)

    def add_stdout(self, text: str) -> None:
        self.stdout_parts.append(text)

    def add_stderr(self, text: str) -> None:
        self.stderr_parts.append(text)
        if self.session_id is not None:
            return
        *lines, self._stderr_tail = (self._stderr_tail + text).split("\n")
        for line in lines:
            if self._scan_session_id(line):
                self._stderr_tail = ""
                return

    def flush(self) -> None:
        """Scan the trailing stderr fragment that never got a newline."""

        if self.session_id is None and self._stderr_tail:
            self._scan_session_id(self._stderr_tail)
        self._stderr_tail = ""

    def _scan_session_id(self, line: str) -> bool:
        match = _SESSION_ID.search(line)
        if match is None:
            return False
        self.session_id = match.group(1)
        return True


class ProcessInvoker:
    """Spawn the worker tool once per call, feed it input, and classify the outcome.

    Invokers hold configuration only; concurrent ``execute`` calls share no
    mutable state.
    """

    def __init__(
        self,
        *,
        command: Sequence[str] = DEFAULT_COMMAND,
        backend: str = DEFAULT_BACKEND,
        timeout_env_var: str = DEFAULT_TIMEOUT_ENV_VAR,
        env: Mapping[str, str] | None = None,
        terminate_grace_seconds: float = 2.0,
    ) -> None:
        if not command:
            raise ValueError("Worker tool command must not be empty.")
        self.command = tuple(command)
        self.backend = backend or DEFAULT_BACKEND
        self.timeout_env_var = timeout_env_var
        self.env = dict(env or {})
        self.terminate_grace_seconds = terminate_grace_seconds

    def build_args(self) -> list[str]:
        # Trailing "-" tells the tool to read its instruction from stdin.
        return [*self.command, "--backend", self.backend, "-"]

    def build_env(self, timeout_ms: int) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        env[self.timeout_env_var] = str(timeout_ms)
        return env

    async def execute(self, input_text: str, workdir: Path | str, timeout_ms: int) -> ProcessResult:
        """Run the tool to completion or until ``timeout_ms`` elapses."""

        args = self.build_args()
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(workdir),
                env=self.build_env(timeout_ms),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            logger.warning("Worker tool failed to start (%s): %s", args[0], error)
            return ProcessResult(
                success=False,
                output="",
                session_id=None,
                error=str(error),
                is_rate_limited=False,
            )

        logger.debug("Spawned %s pid=%s cwd=%s", args[0], process.pid, workdir)
        capture = _StreamCapture()
        io_tasks = (
            asyncio.create_task(_feed_stdin(process.stdin, input_text)),
            asyncio.create_task(_drain(process.stdout, capture.add_stdout)),
            asyncio.create_task(_drain(process.stderr, capture.add_stderr)),
        )
        try:
            try:
                exit_code = await asyncio.wait_for(
                    _wait_for_exit(process, io_tasks),
                    timeout=timeout_ms / 1000,
                )
            except TimeoutError:
                capture.flush()
                result = ProcessResult(
                    success=False,
                    output=capture.stdout,
                    session_id=capture.session_id,
                    error=TIMEOUT_ERROR,
                    is_rate_limited=classify_rate_limit(
                        exit_code=None,
                        stderr=capture.stderr,
                    ).is_rate_limited,
                )
                logger.warning(
                    "Worker tool pid=%s timed out after %d ms; terminating",
                    process.pid,
                    timeout_ms,
                )
                await self._terminate(process)
                return result
            except asyncio.CancelledError:
                await self._terminate(process)
                raise
        finally:
            await self._finish_io(io_tasks)

        capture.flush()
        return _classify_exit(exit_code=exit_code, capture=capture)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except TimeoutError:
            logger.warning("Worker tool pid=%s ignored SIGTERM; killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _finish_io(self, io_tasks: Sequence[asyncio.Task[None]]) -> None:
        # Grandchildren may keep the pipes open after the tool itself exits.
        _done, pending = await asyncio.wait(io_tasks, timeout=self.terminate_grace_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*io_tasks, return_exceptions=True)


def _classify_exit(*, exit_code: int, capture: _StreamCapture) -> ProcessResult:
    trimmed = capture.stdout.strip()
    rate_limit = classify_rate_limit(exit_code=exit_code, stderr=capture.stderr)
    if rate_limit.is_rate_limited:
        logger.info("Worker tool reported throttling: %s", rate_limit.to_log_details())

    if exit_code != 0:
        return ProcessResult(
            success=False,
            output=trimmed,
            session_id=capture.session_id,
            error=f"exit code {exit_code}",
            is_rate_limited=rate_limit.is_rate_limited,
        )
    if not trimmed:
        return ProcessResult(
            success=False,
            output=trimmed,
            session_id=capture.session_id,
            error=EMPTY_OUTPUT_ERROR,
            is_rate_limited=rate_limit.is_rate_limited,
        )
    return ProcessResult(
        success=True,
        output=trimmed,
        session_id=capture.session_id,
        error=None,
        is_rate_limited=rate_limit.is_rate_limited,
    )


async def _wait_for_exit(
    process: asyncio.subprocess.Process,
    io_tasks: Sequence[asyncio.Task[None]],
) -> int:
    # asyncio.wait does not cancel io_tasks when this coroutine is cancelled,
    # so output keeps draining while the child is being terminated.
    await asyncio.wait(io_tasks)
    return await process.wait()


async def _feed_stdin(stdin: asyncio.StreamWriter | None, input_text: str) -> None:
    if stdin is None:
        return
    try:
        stdin.write(input_text.encode("utf-8"))
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Worker tool closed stdin before reading all input")
    finally:
        stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass


async def _drain(stream: asyncio.StreamReader | None, sink: Callable[[str], None]) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            tail = decoder.decode(b"", final=True)
            if tail:
                sink(tail)
            return
        text = decoder.decode(chunk)
        if text:
            sink(text)
