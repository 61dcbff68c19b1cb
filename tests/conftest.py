"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

import agent_batch
from agent_batch.engine.invocation import ProcessInvoker
from agent_batch.engine.models import ProcessResult

ECHO_AGENT_COMMAND = (sys.executable, "-m", "agent_batch.engine.echo_agent")
# Child interpreters must import agent_batch even without an installed package.
SRC_DIR = str(Path(agent_batch.__file__).resolve().parents[1])


class ScriptedInvoker:
    """Fake invoker answering from a per-input script; records calls and concurrency."""

    def __init__(self, responses=None, *, delay: float = 0.0, default=None) -> None:
        self.responses = dict(responses or {})
        self.delay = delay
        self.default = default or ProcessResult(success=True, output="ok")
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(self, input_text, workdir, timeout_ms):
        self.calls.append(input_text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            response = self.responses.get(input_text, self.default)
            if isinstance(response, list):
                return response.pop(0) if len(response) > 1 else response[0]
            return response
        finally:
            self.in_flight -= 1


class RecordingSleep:
    """Stand-in for asyncio.sleep that only records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def echo_invoker() -> ProcessInvoker:
    """Invoker that runs the local echo agent instead of the real worker tool."""
    return ProcessInvoker(
        command=ECHO_AGENT_COMMAND,
        env={"PYTHONPATH": SRC_DIR},
        terminate_grace_seconds=1.0,
    )


@pytest.fixture()
def scripted_invoker():
    """Factory for fake invokers."""
    return ScriptedInvoker


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def echo_agent_env(monkeypatch):
    """Point Settings.from_env at the echo agent with a single fast attempt."""
    monkeypatch.setenv(
        "AGENT_BATCH_COMMAND",
        f"{sys.executable} -m agent_batch.engine.echo_agent",
    )
    monkeypatch.setenv("PYTHONPATH", SRC_DIR)
    monkeypatch.setenv("AGENT_BATCH_MAX_RETRIES", "0")
    monkeypatch.setenv("AGENT_BATCH_RETRY_DELAY_MS", "0")
    for name in (
        "AGENT_BATCH_STATE_DIR",
        "AGENT_BATCH_CONCURRENCY",
        "AGENT_BATCH_TIMEOUT_MS",
        "AGENT_BATCH_BACKEND",
        "CODEAGENT_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)
