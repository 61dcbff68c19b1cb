"""CLI entrypoint for agent-batch."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_batch import __version__
from agent_batch.controllers import (
    AuditRetryCommand,
    AuditRunCommand,
    AuditShowResultCommand,
    BatchCliController,
    BatchStatusCommand,
    ListFailedCommand,
)
from agent_batch.engine.errors import BatchError

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController()

_STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding `.agent-batch/`. Defaults to AGENT_BATCH_STATE_DIR or cwd.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-batch")
@click.option("--verbose", is_flag=True, default=False, help="Log engine activity at DEBUG level.")
def agent_batch(verbose: bool) -> None:
    """Crash-resumable batch runs of an external worker tool."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_batch.command("audit")
@click.argument(
    "root_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
)
@click.option("--resume", is_flag=True, default=False, help="Skip items completed in a prior run.")
@click.option(
    "--status",
    "show_status",
    is_flag=True,
    default=False,
    help="Print the last audit result file and exit.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Max items in flight. Defaults to AGENT_BATCH_CONCURRENCY.",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout. Defaults to AGENT_BATCH_TIMEOUT_MS.",
)
@_STATE_DIR_OPTION
def audit(  # noqa: PLR0913
    root_dir: Path,
    resume: bool,
    show_status: bool,
    concurrency: int | None,
    timeout_ms: int | None,
    state_dir: Path | None,
) -> None:
    """Audit every sizeable code directory under ROOT_DIR and write `AUDIT.md` files."""

    with _cli_errors():
        if show_status:
            _emit_lines(
                BATCH_CONTROLLER.show_audit_result(AuditShowResultCommand(state_dir=state_dir)),
            )
            return
        _emit_lines(
            BATCH_CONTROLLER.run_audit(
                AuditRunCommand(
                    root_dir=root_dir,
                    state_dir=state_dir,
                    resume=resume,
                    concurrency=concurrency,
                    timeout_ms=timeout_ms,
                ),
            ),
        )


@agent_batch.command("audit-retry")
@click.argument("task_id")
@click.argument(
    "root_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
)
@_STATE_DIR_OPTION
def audit_retry(task_id: str, root_dir: Path, state_dir: Path | None) -> None:
    """Re-run one failed or timed-out audit task."""

    with _cli_errors():
        _emit_lines(
            BATCH_CONTROLLER.retry_audit_task(
                AuditRetryCommand(task_id=task_id, root_dir=root_dir, state_dir=state_dir),
            ),
        )


@agent_batch.command("status")
@click.argument("name")
@_STATE_DIR_OPTION
def status(name: str, state_dir: Path | None) -> None:
    """Print the task store summary of batch NAME as JSON."""

    with _cli_errors():
        _emit_lines(BATCH_CONTROLLER.status(BatchStatusCommand(name=name, state_dir=state_dir)))


@agent_batch.command("list-failed")
@click.argument("name")
@_STATE_DIR_OPTION
def list_failed(name: str, state_dir: Path | None) -> None:
    """List failed and timed-out tasks of batch NAME."""

    with _cli_errors():
        _emit_lines(
            BATCH_CONTROLLER.list_failed(ListFailedCommand(name=name, state_dir=state_dir)),
        )


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (BatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_batch()
