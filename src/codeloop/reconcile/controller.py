"""Reconciliation loop: re-invoke the agent until the task converges or fails."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from codeloop.config import KnowledgeSettings, LoopSettings
from codeloop.reconcile.adapter import AgentAdapter, AgentOutcome
from codeloop.reconcile.backend import CancelToken
from codeloop.reconcile.context import CONTINUE_PREAMBLE, build_iteration_context
from codeloop.reconcile.knowledge import KnowledgeStore
from codeloop.reconcile.models import (
    Iteration,
    IterationClass,
    KnowledgeSource,
    Task,
    TaskStatus,
    TerminalReason,
)
from codeloop.reconcile.storage import utc_now
from codeloop.reconcile.task_store import TaskStore
from codeloop.reconcile.workspace import current_git_commit

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]

_FACT_CLASSES = frozenset({IterationClass.PROGRESS, IterationClass.GOAL_SATISFIED})


@dataclass(slots=True)
class ControllerRunSummary:
    """Final state of one controller run."""

    task_id: str
    status: TaskStatus
    terminal_reason: TerminalReason | None
    terminal_detail: str | None
    iterations: int
    elapsed_seconds: float
    git_commit_start: str | None = None
    git_commit_end: str | None = None


class ReconciliationController:
    """Owns one task and drives it to a terminal status.

    Iterations are strictly sequential. The only blocking point is the
    adapter call; cancellation is checked before each iteration, before each
    retry and during backoff sleeps.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        task_store: TaskStore,
        knowledge_store: KnowledgeStore,
        adapter: AgentAdapter,
        loop_settings: LoopSettings,
        knowledge_settings: KnowledgeSettings | None = None,
        cancel_token: CancelToken | None = None,
        on_progress: ProgressCallback | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if loop_settings.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1.")
        if loop_settings.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        self.task_id = task_id
        self.task_store = task_store
        self.knowledge_store = knowledge_store
        self.adapter = adapter
        self.loop_settings = loop_settings
        self.knowledge_settings = knowledge_settings or KnowledgeSettings()
        self.cancel_token = cancel_token or CancelToken(
            poll=lambda: task_store.cancel_requested(task_id),
        )
        self.on_progress = on_progress
        self._random = rng or random.Random()  # noqa: S311

    def run(self) -> ControllerRunSummary:
        """Drive the task to a terminal status; raises ``TaskOwnershipError`` if already owned."""

        started = time.monotonic()
        with self.task_store.owner_lock(self.task_id):
            task = self.task_store.reload(self.task_id)
            if not task.status.is_terminal:
                try:
                    task = self._drive(task)
                except Exception as error:  # noqa: BLE001
                    logger.exception("Controller for task %s failed unexpectedly", self.task_id)
                    task = self._fail_internal(error)
                finally:
                    self._record_git_end()
                task = self.task_store.get(self.task_id)
        return ControllerRunSummary(
            task_id=task.task_id,
            status=task.status,
            terminal_reason=task.terminal_reason,
            terminal_detail=task.terminal_detail,
            iterations=task.iteration_count,
            elapsed_seconds=time.monotonic() - started,
            git_commit_start=task.git_commit_start,
            git_commit_end=task.git_commit_end,
        )

    def _drive(self, task: Task) -> Task:
        if task.status == TaskStatus.PENDING:
            if self.cancel_token.is_cancelled():
                return self._finish(
                    TaskStatus.CANCELLED,
                    TerminalReason.USER_CANCELLED,
                    "Cancelled before the first iteration.",
                )
            task = self.task_store.set_status(self.task_id, TaskStatus.RUNNING)
            task = self.task_store.record_git_commit(
                self.task_id,
                start=current_git_commit(Path(task.working_dir)),
            )
        else:
            self.task_store.add_event(
                self.task_id,
                event_type="resumed",
                details={"iteration_count": task.iteration_count},
            )
            logger.info("Resuming task %s after iteration %d", self.task_id, task.iteration_count)

        iterations = self.task_store.list_iterations(self.task_id)
        no_change_streak = _trailing_no_change(iterations)
        if iterations:
            # A crash may have landed between the last append and its status change.
            last = iterations[-1]
            finished = self._settle(task, last.classification, last.summary, no_change_streak)
            if finished is not None:
                return finished

        while True:
            if self.cancel_token.is_cancelled():
                return self._finish(
                    TaskStatus.CANCELLED,
                    TerminalReason.USER_CANCELLED,
                    f"Cancelled after {task.iteration_count} iteration(s).",
                )
            sequence = task.iteration_count + 1
            self._progress(
                f"iteration round {sequence}/{self.loop_settings.max_iterations}",
            )
            outcome, attempts = self._run_iteration(task, sequence)
            if outcome.classification == IterationClass.CANCELLED:
                return self._finish(
                    TaskStatus.CANCELLED,
                    TerminalReason.USER_CANCELLED,
                    f"Cancelled during iteration {sequence}; it was not recorded.",
                )

            task = self.task_store.append_iteration(
                self.task_id,
                Iteration(
                    sequence=sequence,
                    classification=outcome.classification,
                    summary=outcome.summary,
                    context_path=outcome.context_path,
                    recorded_at=utc_now(),
                    attempts=attempts,
                    changed=outcome.change.changed,
                    changed_files=list(outcome.change.files),
                    exit_code=outcome.exit_code,
                    duration_ms=outcome.duration_ms,
                    reason_code=outcome.reason_code,
                ),
            )
            self._progress(
                f"iteration {sequence}: {outcome.classification.value}",
            )
            if outcome.classification in _FACT_CLASSES:
                self._record_facts(outcome, sequence)

            if outcome.classification == IterationClass.NO_CHANGE:
                no_change_streak += 1
            else:
                no_change_streak = 0
            finished = self._settle(task, outcome.classification, outcome.summary, no_change_streak)
            if finished is not None:
                return finished

    def _settle(
        self,
        task: Task,
        classification: IterationClass,
        summary: str,
        no_change_streak: int,
    ) -> Task | None:
        """Apply the terminal rules to the latest recorded iteration."""

        if classification == IterationClass.GOAL_SATISFIED:
            return self._finish(TaskStatus.CONVERGED, TerminalReason.GOAL_SATISFIED, summary)
        if classification == IterationClass.ERROR_FATAL:
            return self._finish(TaskStatus.FAILED, TerminalReason.AGENT_FATAL, summary)
        if classification == IterationClass.ERROR_RECOVERABLE:
            return self._finish(
                TaskStatus.FAILED,
                TerminalReason.AGENT_UNAVAILABLE,
                f"Retries exhausted ({self.loop_settings.max_retries}): {summary}",
            )
        if no_change_streak > self.loop_settings.stall_confirmations:
            return self._finish(
                TaskStatus.FAILED,
                TerminalReason.STALLED,
                f"No change in {no_change_streak} consecutive iterations.",
            )
        if task.iteration_count >= self.loop_settings.max_iterations:
            return self._finish(
                TaskStatus.FAILED,
                TerminalReason.ITERATION_BUDGET_EXHAUSTED,
                f"Reached max_iterations={self.loop_settings.max_iterations} without convergence.",
            )
        return None

    def _run_iteration(self, task: Task, sequence: int) -> tuple[AgentOutcome, int]:
        """Invoke the agent for one sequence number, retrying recoverable errors."""

        retries = 0
        attempt = 0
        resume_note: str | None = None
        while True:
            attempt += 1
            context = build_iteration_context(
                task=task,
                sequence=sequence,
                attempt=attempt,
                iterations=self.task_store.list_iterations(self.task_id),
                knowledge_entries=self.knowledge_store.list(),
                loop_settings=self.loop_settings,
                knowledge_settings=self.knowledge_settings,
                output_dir=self.task_store.iteration_dir(self.task_id, sequence),
                now=utc_now(),
                resume_note=resume_note,
            )
            outcome = self.adapter.invoke(context, yolo=task.yolo, cancel_token=self.cancel_token)
            if outcome.classification != IterationClass.ERROR_RECOVERABLE:
                return outcome, attempt
            if retries >= self.loop_settings.max_retries:
                return outcome, attempt

            retries += 1
            delay_seconds = self._compute_retry_delay(retry_number=retries)
            self.task_store.add_event(
                self.task_id,
                event_type="retry_scheduled",
                details={
                    "sequence": sequence,
                    "attempt": attempt,
                    "retry": retries,
                    "max_retries": self.loop_settings.max_retries,
                    "delay_seconds": round(delay_seconds, 3),
                    "reason_code": outcome.reason_code,
                    "failure": outcome.failure,
                },
            )
            self._progress(
                f"iteration {sequence}: recoverable error, retry "
                f"{retries}/{self.loop_settings.max_retries} in {delay_seconds:.1f}s",
            )
            logger.warning(
                "Task %s iteration %d attempt %d failed (%s); retrying in %.1fs",
                self.task_id,
                sequence,
                attempt,
                outcome.reason_code or "recoverable",
                delay_seconds,
            )
            if self.cancel_token.wait(delay_seconds):
                return (
                    AgentOutcome(
                        classification=IterationClass.CANCELLED,
                        summary="Cancelled during retry backoff.",
                    ),
                    attempt,
                )
            resume_note = CONTINUE_PREAMBLE.format(
                reason=outcome.reason_code or "recoverable error",
            )

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.loop_settings.retry_max_seconds,
            self.loop_settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _record_facts(self, outcome: AgentOutcome, sequence: int) -> None:
        source = KnowledgeSource(task_id=self.task_id, iteration=sequence)
        for fact in outcome.facts:
            try:
                self.knowledge_store.upsert(fact.key, fact.content, source)
            except (ValueError, TypeError) as error:
                logger.warning("Skipping knowledge fact from task %s: %s", self.task_id, error)

    def _finish(self, status: TaskStatus, reason: TerminalReason, detail: str | None) -> Task:
        task = self.task_store.set_status(self.task_id, status, reason=reason, detail=detail)
        self._progress(f"task {status.value}: {reason.value}")
        return task

    def _fail_internal(self, error: Exception) -> Task:
        task = self.task_store.reload(self.task_id)
        if task.status.is_terminal:
            return task
        return self.task_store.set_status(
            self.task_id,
            TaskStatus.FAILED,
            reason=TerminalReason.INTERNAL_ERROR,
            detail=f"{type(error).__name__}: {error}",
        )

    def _record_git_end(self) -> None:
        task = self.task_store.get(self.task_id)
        if task.git_commit_start is None:
            return
        head = current_git_commit(Path(task.working_dir))
        if head is not None:
            self.task_store.record_git_commit(self.task_id, end=head)

    def _progress(self, message: str) -> None:
        logger.info("Task %s: %s", self.task_id, message)
        if self.on_progress is None:
            return
        self.on_progress(self.task_id, message)


def _trailing_no_change(iterations: list[Iteration]) -> int:
    count = 0
    for iteration in reversed(iterations):
        if iteration.classification != IterationClass.NO_CHANGE:
            break
        count += 1
    return count
