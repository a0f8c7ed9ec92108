"""CLI entrypoint for codeloop."""

import logging
import os
from pathlib import Path

import rich_click as click

from codeloop import __version__
from codeloop.config import SUPPORTED_LOG_LEVELS
from codeloop.controllers import (
    KnowledgeCommand,
    ListTasksCommand,
    LoopCliController,
    RunTaskCommand,
    StateLocation,
    TaskCommand,
)
from codeloop.reconcile.task_store import TaskNotFound, TaskOwnershipError

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()

_working_dir_option = click.option(
    "--working-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory the agent works in. Defaults to CODELOOP_WORKING_DIR or cwd.",
)
_state_dir_option = click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="State directory. Defaults to CODELOOP_STATE_DIR or <working-dir>/.codeloop.",
)


@click.group()
@click.version_option(version=__version__, prog_name="codeloop")
@click.option(
    "--log-level",
    type=click.Choice(list(SUPPORTED_LOG_LEVELS), case_sensitive=False),
    default=None,
    help="Log level for stderr diagnostics. Defaults to CODELOOP_LOG_LEVEL or WARNING.",
)
def codeloop(log_level: str | None) -> None:
    """Drive a coding agent CLI in a loop until the goal converges."""

    level = (log_level or os.getenv("CODELOOP_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@codeloop.command("run")
@click.argument("prompt")
@click.option(
    "--yolo/--no-yolo",
    default=None,
    help="Launch the agent without confirmation gates. Defaults to CODELOOP_YOLO (off).",
)
@_working_dir_option
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration budget. Defaults to CODELOOP_MAX_ITERATIONS (20).",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retries per iteration on recoverable errors. Defaults to CODELOOP_MAX_RETRIES (3).",
)
@_state_dir_option
def run(  # noqa: PLR0913
    prompt: str,
    yolo: bool | None,
    working_dir: Path | None,
    max_iterations: int | None,
    max_retries: int | None,
    state_dir: Path | None,
) -> None:
    """Run PROMPT until it converges, fails or is cancelled.

    Exit codes: 0 converged, 1 failed, 130 cancelled.
    """

    try:
        result = LOOP_CONTROLLER.run_task(
            RunTaskCommand(
                location=StateLocation(working_dir=working_dir, state_dir=state_dir),
                prompt=prompt,
                yolo=yolo,
                max_iterations=max_iterations,
                max_retries=max_retries,
            ),
            emit=click.echo,
        )
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(result.lines)
    click.get_current_context().exit(result.exit_code)


@codeloop.command("tasks")
@_working_dir_option
@_state_dir_option
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "running", "converged", "failed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks(
    working_dir: Path | None,
    state_dir: Path | None,
    status: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit_lines(
        LOOP_CONTROLLER.list_tasks(
            ListTasksCommand(
                location=StateLocation(working_dir=working_dir, state_dir=state_dir),
                status=status,
                limit=limit,
            ),
        ),
    )


@codeloop.command("inspect")
@_working_dir_option
@_state_dir_option
@click.option("--task-id", required=True, help="Task id.")
def inspect(working_dir: Path | None, state_dir: Path | None, task_id: str) -> None:
    """Inspect one task with its iterations and event history."""

    command = TaskCommand(
        location=StateLocation(working_dir=working_dir, state_dir=state_dir),
        task_id=task_id,
    )
    _emit_lines(_task_call(LOOP_CONTROLLER.inspect_task, command))


@codeloop.command("cancel")
@_working_dir_option
@_state_dir_option
@click.option("--task-id", required=True, help="Task id.")
def cancel(working_dir: Path | None, state_dir: Path | None, task_id: str) -> None:
    """Cancel a pending or running task."""

    command = TaskCommand(
        location=StateLocation(working_dir=working_dir, state_dir=state_dir),
        task_id=task_id,
    )
    _emit_lines(_task_call(LOOP_CONTROLLER.cancel_task, command))


@codeloop.command("resume")
@_working_dir_option
@_state_dir_option
@click.option("--task-id", required=True, help="Task id.")
def resume(working_dir: Path | None, state_dir: Path | None, task_id: str) -> None:
    """Resume a task left pending or running by an interrupted process."""

    command = TaskCommand(
        location=StateLocation(working_dir=working_dir, state_dir=state_dir),
        task_id=task_id,
    )
    try:
        result = LOOP_CONTROLLER.resume_task(command, emit=click.echo)
    except (TaskNotFound, TaskOwnershipError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    click.get_current_context().exit(result.exit_code)


@codeloop.group()
def kb() -> None:
    """Project knowledge base maintenance."""


@kb.command("list")
@_working_dir_option
@_state_dir_option
@click.option("--prefix", default=None, help="Only keys starting with this prefix.")
def kb_list(working_dir: Path | None, state_dir: Path | None, prefix: str | None) -> None:
    """List knowledge entries."""

    _emit_lines(
        LOOP_CONTROLLER.kb_list(
            KnowledgeCommand(
                location=StateLocation(working_dir=working_dir, state_dir=state_dir),
                prefix=prefix,
            ),
        ),
    )


@kb.command("get")
@_working_dir_option
@_state_dir_option
@click.argument("key")
def kb_get(working_dir: Path | None, state_dir: Path | None, key: str) -> None:
    """Show one knowledge entry."""

    command = KnowledgeCommand(
        location=StateLocation(working_dir=working_dir, state_dir=state_dir),
        key=key,
    )
    _emit_lines(_knowledge_call(LOOP_CONTROLLER.kb_get, command))


@kb.command("set")
@_working_dir_option
@_state_dir_option
@click.argument("key")
@click.argument("content")
def kb_set(working_dir: Path | None, state_dir: Path | None, key: str, content: str) -> None:
    """Create or overwrite a knowledge entry by hand."""

    command = KnowledgeCommand(
        location=StateLocation(working_dir=working_dir, state_dir=state_dir),
        key=key,
        content=content,
    )
    _emit_lines(_knowledge_call(LOOP_CONTROLLER.kb_set, command))


@kb.command("forget")
@_working_dir_option
@_state_dir_option
@click.argument("key")
def kb_forget(working_dir: Path | None, state_dir: Path | None, key: str) -> None:
    """Delete a knowledge entry."""

    command = KnowledgeCommand(
        location=StateLocation(working_dir=working_dir, state_dir=state_dir),
        key=key,
    )
    _emit_lines(_knowledge_call(LOOP_CONTROLLER.kb_forget, command))


def _task_call(handler, command: TaskCommand) -> list[str]:
    try:
        return handler(command)
    except TaskNotFound as error:
        raise click.ClickException(str(error)) from error


def _knowledge_call(handler, command: KnowledgeCommand) -> list[str]:
    try:
        return handler(command)
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="KEY") from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    codeloop()
