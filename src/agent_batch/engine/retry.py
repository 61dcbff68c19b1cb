"""Bounded retries with exponential backoff around a process invoker."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol

from agent_batch.engine.invocation import EMPTY_OUTPUT_ERROR
from agent_batch.engine.models import ProcessResult

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[object]]


class Invoker(Protocol):
    """Anything that runs one attempt of the worker tool."""

    async def execute(self, input_text: str, workdir: Path | str, timeout_ms: int) -> ProcessResult:
        """Run one attempt and return its classified outcome."""


def backoff_delay_ms(retry_delay_ms: int, attempt: int) -> int:
    """Delay before the retry that follows zero-based ``attempt``."""

    return retry_delay_ms * 2**attempt


async def execute_with_retry(  # noqa: PLR0913
    invoker: Invoker,
    input_text: str,
    workdir: Path | str,
    timeout_ms: int,
    max_retries: int,
    retry_delay_ms: int,
    *,
    sleep: Sleep = asyncio.sleep,
) -> ProcessResult:
    """Run ``invoker`` until it succeeds or retries are exhausted.

    Performs at most ``max_retries + 1`` attempts. An ``empty output`` result is
    a stable negative answer from the tool and is returned without retrying.
    Timeouts, non-zero exits, spawn failures and throttling are retried alike.
    """

    attempt = 0
    while True:
        result = await invoker.execute(input_text, workdir, timeout_ms)
        if result.success or result.error == EMPTY_OUTPUT_ERROR:
            return result
        if attempt >= max_retries:
            logger.warning(
                "Giving up after %d attempt(s): %s",
                attempt + 1,
                result.error,
            )
            return result

        delay_ms = backoff_delay_ms(retry_delay_ms, attempt)
        logger.warning(
            "Attempt %d/%d failed (%s%s); retrying in %d ms",
            attempt + 1,
            max_retries + 1,
            result.error,
            ", rate limited" if result.is_rate_limited else "",
            delay_ms,
        )
        await sleep(delay_ms / 1000)
        attempt += 1
