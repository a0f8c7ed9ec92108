"""Task dispatcher: one controller thread per submitted task."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from codeloop.config import Settings
from codeloop.reconcile.adapter import AgentAdapter
from codeloop.reconcile.backend import CancelToken
from codeloop.reconcile.controller import (
    ControllerRunSummary,
    ProgressCallback,
    ReconciliationController,
)
from codeloop.reconcile.knowledge import KnowledgeStore
from codeloop.reconcile.models import Task, TaskStatus
from codeloop.reconcile.task_store import TaskOwnershipError, TaskStore

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Task], AgentAdapter]


@dataclass(slots=True)
class _ActiveTask:
    thread: threading.Thread
    cancel_token: CancelToken
    summary: ControllerRunSummary | None = None
    error: Exception | None = None
    done: threading.Event = field(default_factory=threading.Event)


class TaskDispatcher:
    """Accepts prompts and runs each task independently in a daemon thread.

    A new prompt never touches a running task; cancelling one task never
    affects another.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_store: TaskStore,
        knowledge_store: KnowledgeStore,
        settings: Settings,
        adapter_factory: AdapterFactory,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.task_store = task_store
        self.knowledge_store = knowledge_store
        self.settings = settings
        self.adapter_factory = adapter_factory
        self.on_progress = on_progress
        self._active: dict[str, _ActiveTask] = {}
        self._lock = threading.Lock()
        self._closed = False

    def submit(
        self,
        prompt: str,
        *,
        working_dir: Path | None = None,
        yolo: bool | None = None,
    ) -> str:
        """Create a task and start its controller; returns immediately."""

        if self._closed:
            raise RuntimeError("Dispatcher is shut down.")
        resolved_dir = (working_dir or self.settings.working_dir).resolve()
        task = self.task_store.create(
            prompt,
            resolved_dir,
            yolo=self.settings.yolo if yolo is None else yolo,
        )
        self._start(task.task_id)
        return task.task_id

    def resume(self, task_id: str) -> str:
        """Restart the controller of a task left non-terminal by a crashed process."""

        task = self.task_store.reload(task_id)
        if not is_resumable(task):
            raise ValueError(f"Task {task_id} is already {task.status.value}.")
        with self._lock:
            if task_id in self._active and not self._active[task_id].done.is_set():
                raise TaskOwnershipError(f"Task {task_id} is already running in this process.")
        self._start(task_id)
        return task_id

    def cancel(self, task_id: str) -> bool:
        """Request cancellation; returns ``False`` if the task is already terminal."""

        requested = self.task_store.request_cancel(task_id)
        with self._lock:
            active = self._active.get(task_id)
        if active is not None:
            active.cancel_token.cancel()
        return requested

    def wait(self, task_id: str, timeout: float | None = None) -> ControllerRunSummary | None:
        """Block until the task's controller finishes; ``None`` on timeout."""

        with self._lock:
            active = self._active.get(task_id)
        if active is None:
            raise KeyError(f"Task {task_id} is not managed by this dispatcher.")
        if not active.done.wait(timeout):
            return None
        if active.error is not None:
            raise active.error
        return active.summary

    def active_task_ids(self) -> list[str]:
        with self._lock:
            return sorted(
                task_id for task_id, active in self._active.items() if not active.done.is_set()
            )

    def shutdown(self, *, cancel: bool = True, timeout: float | None = None) -> None:
        """Stop accepting work; optionally cancel and join every running task."""

        self._closed = True
        task_ids = self.active_task_ids()
        if cancel:
            for task_id in task_ids:
                self.cancel(task_id)
        for task_id in task_ids:
            self._wait_quietly(task_id, timeout)

    def _wait_quietly(self, task_id: str, timeout: float | None) -> None:
        try:
            self.wait(task_id, timeout)
        except Exception as error:  # noqa: BLE001
            logger.warning("Task %s ended with error during shutdown: %s", task_id, error)

    def _start(self, task_id: str) -> None:
        task = self.task_store.get(task_id)
        cancel_token = CancelToken(poll=lambda: self.task_store.cancel_requested(task_id))
        controller = ReconciliationController(
            task_id=task_id,
            task_store=self.task_store,
            knowledge_store=self.knowledge_store,
            adapter=self.adapter_factory(task),
            loop_settings=self.settings.loop,
            knowledge_settings=self.settings.knowledge,
            cancel_token=cancel_token,
            on_progress=self.on_progress,
        )
        thread = threading.Thread(
            target=self._run_controller,
            args=(task_id, controller),
            name=f"codeloop-task-{task_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._active[task_id] = _ActiveTask(thread=thread, cancel_token=cancel_token)
        logger.info("Dispatching task %s (status=%s)", task_id, task.status.value)
        thread.start()

    def _run_controller(self, task_id: str, controller: ReconciliationController) -> None:
        with self._lock:
            active = self._active[task_id]
        try:
            active.summary = controller.run()
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s controller thread crashed", task_id)
            active.error = error
        finally:
            active.done.set()


def is_resumable(task: Task) -> bool:
    return task.status in {TaskStatus.PENDING, TaskStatus.RUNNING}
