"""Durable per-task records with an append-only iteration log."""

from __future__ import annotations

import fcntl
import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any
from uuid import uuid4

from codeloop.reconcile.models import (
    ALLOWED_TRANSITIONS,
    Iteration,
    IterationClass,
    Task,
    TaskEvent,
    TaskStatus,
    TerminalReason,
)
from codeloop.reconcile.storage import (
    append_jsonl,
    atomic_write_text,
    from_iso,
    load_json,
    locked_file,
    optional_iso,
    read_jsonl,
    to_iso,
    utc_now,
    write_json,
)

logger = logging.getLogger(__name__)

TASK_RECORD_VERSION = 1

_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_TASK_FILE = "task.json"
_ITERATIONS_FILE = "iterations.jsonl"
_EVENTS_FILE = "events.jsonl"
_CANCEL_MARKER = "cancel_requested"
_OWNER_LOCK = "owner.lock"


class TaskStoreError(RuntimeError):
    """Base class for task store integrity errors."""


class TaskNotFound(TaskStoreError, KeyError):
    """No task record exists for the given id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Task not found"


class InvalidSequence(TaskStoreError):
    """Iteration sequence number is not exactly one past the current max."""


class InvalidTransition(TaskStoreError):
    """Target status is not reachable from the current status."""


class TaskOwnershipError(TaskStoreError):
    """Another controller already owns the task."""


class TaskStore:
    """File-backed task store: ``tasks/<task_id>/{task.json,iterations.jsonl,events.jsonl}``.

    Every mutation is written to disk (fsync + atomic replace or fsync'd
    append) before the in-memory view is updated, so a fresh instance
    resumes from exactly the last durable state.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir
        self.tasks_dir = root_dir / "tasks"
        self._tasks: dict[str, Task] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def create(
        self,
        prompt: str,
        working_dir: Path | str,
        *,
        yolo: bool = False,
        task_id: str | None = None,
    ) -> Task:
        """Create a pending task record."""

        if not prompt.strip():
            raise ValueError("Task prompt must be a non-empty string.")
        task_id = task_id or str(uuid4())
        _validate_task_id(task_id)
        task_dir = self.task_dir(task_id)
        if (task_dir / _TASK_FILE).exists():
            raise ValueError(f"Task already exists: {task_id}")

        now = utc_now()
        task = Task(
            task_id=task_id,
            prompt=prompt,
            status=TaskStatus.PENDING,
            working_dir=str(working_dir),
            created_at=now,
            updated_at=now,
            yolo=yolo,
        )
        with self._task_lock(task_id, must_exist=False):
            task_dir.mkdir(parents=True, exist_ok=True)
            (task_dir / _ITERATIONS_FILE).touch()
            write_json(task_dir / _TASK_FILE, _task_to_record(task))
            self._append_event(
                task_id,
                event_type="created",
                status_to=TaskStatus.PENDING,
                details={"working_dir": task.working_dir, "yolo": yolo},
            )
            self._tasks[task_id] = task
        logger.info("Task created: task_id=%s working_dir=%s", task_id, task.working_dir)
        return replace(task)

    def get(self, task_id: str) -> Task:
        """Return the current task view, loading it from disk on first access."""

        with self._task_lock(task_id):
            task = self._tasks.get(task_id)
            if task is None:
                task = self._load(task_id)
                self._tasks[task_id] = task
            return replace(task)

    def reload(self, task_id: str) -> Task:
        """Drop the cached view and re-read the durable record."""

        with self._task_lock(task_id):
            task = self._load(task_id)
            self._tasks[task_id] = task
            return replace(task)

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int | None = None) -> list[Task]:
        """List tasks from disk, newest first."""

        if not self.tasks_dir.exists():
            return []
        tasks: list[Task] = []
        for task_dir in self.tasks_dir.iterdir():
            if not (task_dir / _TASK_FILE).is_file():
                continue
            try:
                task = self._load(task_dir.name)
            except (ValueError, TypeError) as error:
                logger.warning("Skipping unreadable task record %s: %s", task_dir, error)
                continue
            if status is not None and task.status != status:
                continue
            tasks.append(task)
        tasks.sort(key=lambda item: item.created_at, reverse=True)
        return tasks[:limit] if limit is not None else tasks

    def list_iterations(self, task_id: str) -> list[Iteration]:
        self._require_exists(task_id)
        return [
            _iteration_from_record(record)
            for record in read_jsonl(self.task_dir(task_id) / _ITERATIONS_FILE)
        ]

    def list_events(self, task_id: str) -> list[TaskEvent]:
        self._require_exists(task_id)
        return [
            _event_from_record(record)
            for record in read_jsonl(self.task_dir(task_id) / _EVENTS_FILE)
        ]

    def append_iteration(self, task_id: str, iteration: Iteration) -> Task:
        """Append one immutable iteration; sequence must be exactly max + 1."""

        if iteration.classification == IterationClass.CANCELLED:
            raise ValueError("Cancelled invocations are not recorded as iterations.")
        with self._task_lock(task_id):
            task = self._load(task_id)
            if task.status != TaskStatus.RUNNING:
                raise InvalidTransition(
                    f"Cannot append iteration to task {task_id} in status {task.status.value}.",
                )
            expected = task.iteration_count + 1
            if iteration.sequence != expected:
                raise InvalidSequence(
                    f"Task {task_id}: expected iteration sequence {expected}, "
                    f"got {iteration.sequence}.",
                )
            task_dir = self.task_dir(task_id)
            append_jsonl(task_dir / _ITERATIONS_FILE, _iteration_to_record(iteration))
            task.iteration_count = iteration.sequence
            task.updated_at = utc_now()
            write_json(task_dir / _TASK_FILE, _task_to_record(task))
            self._append_event(
                task_id,
                event_type="iteration_recorded",
                details={
                    "sequence": iteration.sequence,
                    "classification": iteration.classification.value,
                    "attempts": iteration.attempts,
                },
            )
            self._tasks[task_id] = task
            return replace(task)

    def set_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        reason: TerminalReason | None = None,
        detail: str | None = None,
    ) -> Task:
        """Move a task along the lifecycle state machine."""

        terminal = status.is_terminal
        if terminal and reason is None:
            raise ValueError(f"Terminal status {status.value} requires a terminal reason.")
        if not terminal and (reason is not None or detail is not None):
            raise ValueError(f"Non-terminal status {status.value} must not carry a reason.")

        with self._task_lock(task_id):
            task = self._load(task_id)
            current = task.status
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"Task {task_id}: illegal transition {current.value} -> {status.value}.",
                )
            now = utc_now()
            task.status = status
            task.updated_at = now
            if terminal:
                task.terminal_reason = reason
                task.terminal_detail = detail
                task.archived_at = now
            write_json(self.task_dir(task_id) / _TASK_FILE, _task_to_record(task))
            self._append_event(
                task_id,
                event_type="status_changed",
                status_from=current,
                status_to=status,
                details={
                    "reason": reason.value if reason is not None else None,
                    "detail": detail,
                },
            )
            self._tasks[task_id] = task
        logger.info(
            "Task status changed: task_id=%s %s -> %s reason=%s",
            task_id,
            current.value,
            status.value,
            reason.value if reason is not None else "-",
        )
        return replace(task)

    def record_git_commit(
        self,
        task_id: str,
        *,
        start: str | None = None,
        end: str | None = None,
    ) -> Task:
        """Store the git commit range the task ran across."""

        with self._task_lock(task_id):
            task = self._load(task_id)
            if start is not None:
                task.git_commit_start = start
            if end is not None:
                task.git_commit_end = end
            task.updated_at = utc_now()
            write_json(self.task_dir(task_id) / _TASK_FILE, _task_to_record(task))
            self._tasks[task_id] = task
            return replace(task)

    def add_event(
        self,
        task_id: str,
        *,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        with self._task_lock(task_id):
            self._append_event(
                task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )

    def request_cancel(self, task_id: str) -> bool:
        """Durably request cancellation; picked up at the owner's next checkpoint."""

        with self._task_lock(task_id):
            task = self._load(task_id)
            if task.status.is_terminal:
                return False
            marker = self.task_dir(task_id) / _CANCEL_MARKER
            if not marker.exists():
                atomic_write_text(marker, f"{to_iso(utc_now())}\n")
                self._append_event(task_id, event_type="cancel_requested")
            return True

    def cancel_requested(self, task_id: str) -> bool:
        return (self.task_dir(task_id) / _CANCEL_MARKER).exists()

    @contextmanager
    def owner_lock(self, task_id: str) -> Iterator[None]:
        """Hold exclusive, non-blocking ownership of a task for one controller."""

        self._require_exists(task_id)
        lock_path = self.task_dir(task_id) / _OWNER_LOCK
        with lock_path.open("a+", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as error:
                raise TaskOwnershipError(
                    f"Task {task_id} is already owned by another controller.",
                ) from error
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def task_dir(self, task_id: str) -> Path:
        _validate_task_id(task_id)
        return self.tasks_dir / task_id

    def task_record_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / _TASK_FILE

    def iteration_dir(self, task_id: str, sequence: int) -> Path:
        return self.task_dir(task_id) / "iterations" / f"{sequence:04d}"

    @contextmanager
    def _task_lock(self, task_id: str, *, must_exist: bool = True) -> Iterator[None]:
        if must_exist:
            self._require_exists(task_id)
        with self._locks_guard:
            lock = self._locks.setdefault(task_id, threading.RLock())
        with lock, locked_file(self.task_dir(task_id) / _TASK_FILE):
            yield

    def _require_exists(self, task_id: str) -> None:
        if not (self.task_dir(task_id) / _TASK_FILE).is_file():
            raise TaskNotFound(f"Task not found: {task_id}")

    def _load(self, task_id: str) -> Task:
        task_dir = self.task_dir(task_id)
        task_path = task_dir / _TASK_FILE
        if not task_path.is_file():
            raise TaskNotFound(f"Task not found: {task_id}")
        task = _task_from_record(load_json(task_path))
        # The iteration log is authoritative; task.json may lag one write behind.
        task.iteration_count = len(read_jsonl(task_dir / _ITERATIONS_FILE))
        return task

    def _append_event(
        self,
        task_id: str,
        *,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        append_jsonl(
            self.task_dir(task_id) / _EVENTS_FILE,
            {
                "event_type": event_type,
                "created_at": to_iso(utc_now()),
                "status_from": status_from.value if status_from is not None else None,
                "status_to": status_to.value if status_to is not None else None,
                "details": details or {},
            },
        )


def _validate_task_id(task_id: str) -> None:
    if not _TASK_ID_PATTERN.match(task_id):
        raise ValueError(f"Invalid task id: {task_id!r}")


def _task_to_record(task: Task) -> dict[str, Any]:
    return {
        "record_version": TASK_RECORD_VERSION,
        "task_id": task.task_id,
        "prompt": task.prompt,
        "status": task.status.value,
        "working_dir": task.working_dir,
        "yolo": task.yolo,
        "created_at": to_iso(task.created_at),
        "updated_at": to_iso(task.updated_at),
        "iteration_count": task.iteration_count,
        "terminal_reason": task.terminal_reason.value if task.terminal_reason else None,
        "terminal_detail": task.terminal_detail,
        "archived_at": to_iso(task.archived_at),
        "git_commit_start": task.git_commit_start,
        "git_commit_end": task.git_commit_end,
    }


def _task_from_record(raw: dict[str, Any]) -> Task:
    task_id = raw.get("task_id")
    prompt = raw.get("prompt")
    if not isinstance(task_id, str) or not task_id:
        raise ValueError("task.task_id must be a non-empty string")
    if not isinstance(prompt, str):
        raise TypeError("task.prompt must be a string")
    terminal_reason = raw.get("terminal_reason")
    try:
        return Task(
            task_id=task_id,
            prompt=prompt,
            status=TaskStatus(raw["status"]),
            working_dir=str(raw["working_dir"]),
            created_at=from_iso(str(raw["created_at"])),
            updated_at=from_iso(str(raw["updated_at"])),
            yolo=bool(raw.get("yolo", False)),
            iteration_count=int(raw.get("iteration_count", 0)),
            terminal_reason=TerminalReason(terminal_reason) if terminal_reason else None,
            terminal_detail=raw.get("terminal_detail"),
            archived_at=optional_iso(raw.get("archived_at")),
            git_commit_start=raw.get("git_commit_start"),
            git_commit_end=raw.get("git_commit_end"),
        )
    except KeyError as error:
        raise ValueError(f"Task record {task_id} missing field: {error}") from error


def _iteration_to_record(iteration: Iteration) -> dict[str, Any]:
    return {
        "sequence": iteration.sequence,
        "classification": iteration.classification.value,
        "summary": iteration.summary,
        "context_path": iteration.context_path,
        "recorded_at": to_iso(iteration.recorded_at),
        "attempts": iteration.attempts,
        "changed": iteration.changed,
        "changed_files": list(iteration.changed_files),
        "exit_code": iteration.exit_code,
        "duration_ms": iteration.duration_ms,
        "reason_code": iteration.reason_code,
    }


def _iteration_from_record(raw: dict[str, Any]) -> Iteration:
    return Iteration(
        sequence=int(raw["sequence"]),
        classification=IterationClass(raw["classification"]),
        summary=str(raw.get("summary", "")),
        context_path=str(raw.get("context_path", "")),
        recorded_at=from_iso(str(raw["recorded_at"])),
        attempts=int(raw.get("attempts", 1)),
        changed=raw.get("changed"),
        changed_files=list(raw.get("changed_files") or []),
        exit_code=raw.get("exit_code"),
        duration_ms=raw.get("duration_ms"),
        reason_code=raw.get("reason_code"),
    )


def _event_from_record(raw: dict[str, Any]) -> TaskEvent:
    status_from = raw.get("status_from")
    status_to = raw.get("status_to")
    details = raw.get("details")
    return TaskEvent(
        event_type=str(raw["event_type"]),
        created_at=from_iso(str(raw["created_at"])),
        status_from=TaskStatus(status_from) if status_from else None,
        status_to=TaskStatus(status_to) if status_to else None,
        details=details if isinstance(details, dict) else {},
    )
