"""Domain models for tasks, iterations and knowledge entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    CONVERGED = "converged"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.CONVERGED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.CONVERGED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.CONVERGED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class IterationClass(str, Enum):
    """Normalized classification of one agent invocation.

    ``CANCELLED`` is reported by the adapter only; it is never recorded as
    an iteration.
    """

    PROGRESS = "progress"
    NO_CHANGE = "no_change"
    ERROR_RECOVERABLE = "error_recoverable"
    ERROR_FATAL = "error_fatal"
    GOAL_SATISFIED = "goal_satisfied"
    CANCELLED = "cancelled"


class TerminalReason(str, Enum):
    """Why a task reached its terminal status."""

    GOAL_SATISFIED = "goal_satisfied"
    STALLED = "stalled"
    AGENT_UNAVAILABLE = "agent_unavailable"
    AGENT_FATAL = "agent_fatal"
    ITERATION_BUDGET_EXHAUSTED = "iteration_budget_exhausted"
    USER_CANCELLED = "user_cancelled"
    INTERNAL_ERROR = "internal_error"


@dataclass(slots=True)
class Task:
    """One user goal and its lifecycle."""

    task_id: str
    prompt: str
    status: TaskStatus
    working_dir: str
    created_at: datetime
    updated_at: datetime
    yolo: bool = False
    iteration_count: int = 0
    terminal_reason: TerminalReason | None = None
    terminal_detail: str | None = None
    archived_at: datetime | None = None
    git_commit_start: str | None = None
    git_commit_end: str | None = None


@dataclass(slots=True)
class Iteration:
    """One recorded agent invocation within a task. Immutable once appended."""

    sequence: int
    classification: IterationClass
    summary: str
    context_path: str
    recorded_at: datetime
    attempts: int = 1
    changed: bool | None = None
    changed_files: list[str] = field(default_factory=list)
    exit_code: int | None = None
    duration_ms: int | None = None
    reason_code: str | None = None


@dataclass(slots=True)
class TaskEvent:
    """Task event entry for the audit trail."""

    event_type: str
    created_at: datetime
    status_from: TaskStatus | None = None
    status_to: TaskStatus | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class KnowledgeSource:
    """Task iteration that produced or last confirmed a knowledge entry."""

    task_id: str
    iteration: int | None = None


@dataclass(slots=True)
class KnowledgeEntry:
    """Durable project fact shared by every task."""

    key: str
    content: str
    source_task_id: str
    source_iteration: int | None
    confirmations: int
    created_at: datetime
    updated_at: datetime

    def is_stale(self, *, now: datetime, stale_after: timedelta) -> bool:
        """Advisory staleness marker; never used to drop entries."""

        return now - self.updated_at > stale_after
