"""Controllers for codeloop CLI commands."""

from __future__ import annotations

import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from codeloop.config import Settings
from codeloop.reconcile.adapter import AgentAdapter
from codeloop.reconcile.controller import ControllerRunSummary
from codeloop.reconcile.convergence import resolve_convergence_policy
from codeloop.reconcile.dispatcher import TaskDispatcher
from codeloop.reconcile.knowledge import KnowledgeStore
from codeloop.reconcile.models import KnowledgeSource, TaskStatus, TerminalReason
from codeloop.reconcile.storage import utc_now
from codeloop.reconcile.task_store import TaskOwnershipError, TaskStore

EXIT_CONVERGED = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

EXIT_CODES = {
    TaskStatus.CONVERGED: EXIT_CONVERGED,
    TaskStatus.FAILED: EXIT_FAILED,
    TaskStatus.CANCELLED: EXIT_CANCELLED,
}

SHORT_SHA_LEN = 7
MANUAL_SOURCE = "manual"


@dataclass(slots=True)
class StateLocation:
    """Where the stores live for one CLI invocation."""

    working_dir: Path | None
    state_dir: Path | None


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for running one prompt to completion."""

    location: StateLocation
    prompt: str
    yolo: bool | None
    max_iterations: int | None
    max_retries: int | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    location: StateLocation
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskCommand:
    """CLI input for single-task operations (inspect, cancel, resume)."""

    location: StateLocation
    task_id: str


@dataclass(slots=True)
class KnowledgeCommand:
    """CLI input for knowledge base maintenance."""

    location: StateLocation
    key: str | None = None
    content: str | None = None
    prefix: str | None = None


@dataclass(slots=True)
class LoopRunResult:
    """Final lines and process exit code of a blocking task run."""

    lines: list[str]
    exit_code: int


class LoopCliController:
    """Coordinates task runs, task inspection and knowledge maintenance."""

    def run_task(self, command: RunTaskCommand, *, emit: Callable[[str], None]) -> LoopRunResult:
        settings = _settings(command.location)
        if command.yolo is not None:
            settings.yolo = command.yolo
        if command.max_iterations is not None:
            settings.loop.max_iterations = command.max_iterations
        if command.max_retries is not None:
            settings.loop.max_retries = command.max_retries
        settings.validate()
        if not settings.working_dir.is_dir():
            raise ValueError(f"Working directory does not exist: {settings.working_dir}")

        dispatcher = _dispatcher(settings, emit)
        task_id = dispatcher.submit(command.prompt, working_dir=settings.working_dir)
        emit(f"Task created: {task_id}")
        emit(f"  Task record: {dispatcher.task_store.task_record_path(task_id)}")
        return _wait_for_result(dispatcher, task_id)

    def resume_task(self, command: TaskCommand, *, emit: Callable[[str], None]) -> LoopRunResult:
        settings = _settings(command.location)
        settings.validate()
        dispatcher = _dispatcher(settings, emit)
        dispatcher.resume(command.task_id)
        emit(f"Task resumed: {command.task_id}")
        return _wait_for_result(dispatcher, command.task_id)

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.location)
        task_store, _ = _stores(settings)
        status_filter = TaskStatus(command.status.strip().lower()) if command.status else None
        tasks = task_store.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} "
                f"iterations={task.iteration_count} "
                f"reason={task.terminal_reason.value if task.terminal_reason else '-'} "
                f"created_at={task.created_at.isoformat()} "
                f"prompt={_preview(task.prompt)}",
            )
        return lines

    def inspect_task(self, command: TaskCommand) -> list[str]:
        settings = _settings(command.location)
        task_store, _ = _stores(settings)
        task = task_store.get(command.task_id)
        iterations = task_store.list_iterations(command.task_id)
        events = task_store.list_events(command.task_id)

        lines = [
            f"Task: {task.task_id}",
            f"Status: {task.status.value}",
            f"Reason: {task.terminal_reason.value if task.terminal_reason else '-'}",
            f"Detail: {task.terminal_detail or '-'}",
            f"Working dir: {task.working_dir}",
            f"Yolo: {'yes' if task.yolo else 'no'}",
            f"Prompt: {task.prompt}",
            f"Git: {_git_range(task.git_commit_start, task.git_commit_end)}",
            f"Iterations: {len(iterations)}",
        ]
        for iteration in iterations:
            lines.append(
                f"  #{iteration.sequence} {iteration.classification.value} "
                f"attempts={iteration.attempts} exit={_dash(iteration.exit_code)} "
                f"changed_files={len(iteration.changed_files)} "
                f"summary={_preview(iteration.summary)}",
            )
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskCommand) -> list[str]:
        """Write the cancel marker; finalize directly when no controller owns the task."""

        settings = _settings(command.location)
        task_store, _ = _stores(settings)
        if not task_store.request_cancel(command.task_id):
            task = task_store.get(command.task_id)
            return [f"Task already {task.status.value}: {command.task_id}"]
        try:
            with task_store.owner_lock(command.task_id):
                task = task_store.reload(command.task_id)
                if not task.status.is_terminal:
                    task_store.set_status(
                        command.task_id,
                        TaskStatus.CANCELLED,
                        reason=TerminalReason.USER_CANCELLED,
                        detail="Cancelled while no controller was running.",
                    )
                return [f"Task cancelled: {command.task_id}"]
        except TaskOwnershipError:
            return [f"Cancel requested: {command.task_id} (the running controller will stop)"]

    def kb_list(self, command: KnowledgeCommand) -> list[str]:
        settings = _settings(command.location)
        _, knowledge_store = _stores(settings)
        entries = knowledge_store.list(prefix=command.prefix)
        stale_after = timedelta(days=settings.knowledge.stale_after_days)
        now = utc_now()
        lines = [f"Knowledge entries: {len(entries)}"]
        for entry in entries:
            stale = entry.is_stale(now=now, stale_after=stale_after)
            lines.append(
                f"  {entry.key} confirmations={entry.confirmations} "
                f"updated_at={entry.updated_at.isoformat()}{' stale' if stale else ''} "
                f"content={_preview(entry.content)}",
            )
        return lines

    def kb_get(self, command: KnowledgeCommand) -> list[str]:
        settings = _settings(command.location)
        _, knowledge_store = _stores(settings)
        entry = knowledge_store.get(_required(command.key, "key"))
        if entry is None:
            return [f"Knowledge entry not found: {command.key}"]
        return [
            f"Key: {entry.key}",
            f"Confirmations: {entry.confirmations}",
            f"Source: task={entry.source_task_id} iteration={_dash(entry.source_iteration)}",
            f"Created: {entry.created_at.isoformat()}",
            f"Updated: {entry.updated_at.isoformat()}",
            "",
            entry.content,
        ]

    def kb_set(self, command: KnowledgeCommand) -> list[str]:
        settings = _settings(command.location)
        _, knowledge_store = _stores(settings)
        entry = knowledge_store.upsert(
            _required(command.key, "key"),
            _required(command.content, "content"),
            KnowledgeSource(task_id=MANUAL_SOURCE),
        )
        return [f"Knowledge entry saved: {entry.key} confirmations={entry.confirmations}"]

    def kb_forget(self, command: KnowledgeCommand) -> list[str]:
        settings = _settings(command.location)
        _, knowledge_store = _stores(settings)
        key = _required(command.key, "key")
        if knowledge_store.delete(key):
            return [f"Knowledge entry deleted: {key}"]
        return [f"Knowledge entry not found: {key}"]


def build_adapter(settings: Settings) -> AgentAdapter:
    return AgentAdapter(
        settings.agent,
        convergence=resolve_convergence_policy(settings.loop.convergence),
    )


def render_session_summary(summary: ControllerRunSummary, task_record_path: Path) -> list[str]:
    reason = summary.terminal_reason.value if summary.terminal_reason else "-"
    lines = [
        "",
        f"Session summary: iterated {summary.iterations} rounds "
        f"in {fmt_elapsed_compact(int(summary.elapsed_seconds))}.",
        f"  Status:      {summary.status.value} ({reason})",
    ]
    if summary.terminal_detail:
        lines.append(f"  Detail:      {_preview(summary.terminal_detail, limit=200)}")
    lines.append(f"  Task record: {task_record_path}")
    if summary.git_commit_start or summary.git_commit_end:
        lines.append(f"  Git:         {_git_range(summary.git_commit_start, summary.git_commit_end)}")
    return lines


def fmt_elapsed_compact(elapsed_seconds: int) -> str:
    if elapsed_seconds < 60:
        return f"{elapsed_seconds}s"
    if elapsed_seconds < 3600:
        minutes, seconds = divmod(elapsed_seconds, 60)
        return f"{minutes}m {seconds:02}s"
    hours, remainder = divmod(elapsed_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes:02}m {seconds:02}s"


def short_git_commit(commit: str | None) -> str:
    if not commit:
        return "-"
    return commit[:SHORT_SHA_LEN]


def _git_range(start: str | None, end: str | None) -> str:
    if not start and not end:
        return "-"
    return f"{short_git_commit(start)} -> {short_git_commit(end)}"


def _settings(location: StateLocation) -> Settings:
    return Settings.from_env(working_dir=location.working_dir, state_dir=location.state_dir)


def _stores(settings: Settings) -> tuple[TaskStore, KnowledgeStore]:
    root = settings.resolved_state_dir
    return (
        TaskStore(root),
        KnowledgeStore(root, content_max_chars=settings.knowledge.content_max_chars),
    )


def _dispatcher(settings: Settings, emit: Callable[[str], None]) -> TaskDispatcher:
    task_store, knowledge_store = _stores(settings)
    return TaskDispatcher(
        task_store=task_store,
        knowledge_store=knowledge_store,
        settings=settings,
        adapter_factory=lambda _task: build_adapter(settings),
        on_progress=lambda _task_id, message: emit(f"  {message}"),
    )


def _wait_for_result(dispatcher: TaskDispatcher, task_id: str) -> LoopRunResult:
    with _cancel_on_signal(lambda: dispatcher.cancel(task_id)):
        summary = dispatcher.wait(task_id)
    if summary is None:  # pragma: no cover - wait without timeout always returns
        raise RuntimeError(f"Task {task_id} did not finish.")
    return LoopRunResult(
        lines=render_session_summary(summary, dispatcher.task_store.task_record_path(task_id)),
        exit_code=EXIT_CODES.get(summary.status, EXIT_FAILED),
    )


def _required(value: str | None, name: str) -> str:
    if value is None:
        raise ValueError(f"Missing required {name}.")
    return value


def _preview(text: str, *, limit: int = 80) -> str:
    single_line = " ".join(text.split())
    if len(single_line) <= limit:
        return single_line
    return single_line[: limit - 3] + "..."


def _dash(value: object | None) -> str:
    return "-" if value is None else str(value)


@contextmanager
def _cancel_on_signal(cancel: Callable[[], object]) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a task cancellation for the duration of a run."""

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(_signum: int, _frame: object | None) -> None:
        cancel()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
