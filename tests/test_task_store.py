from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from codeloop.reconcile.models import Iteration, IterationClass, TaskStatus, TerminalReason
from codeloop.reconcile.storage import load_json, utc_now, write_json
from codeloop.reconcile.task_store import (
    InvalidSequence,
    InvalidTransition,
    TaskNotFound,
    TaskOwnershipError,
    TaskStore,
)

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Task Lifecycle"),
]


def _iteration(sequence: int, classification: IterationClass = IterationClass.PROGRESS) -> Iteration:
    return Iteration(
        sequence=sequence,
        classification=classification,
        summary=f"step {sequence}",
        context_path=f"iterations/{sequence:04d}/context.md",
        recorded_at=utc_now(),
    )


def _running_task(task_store: TaskStore, project_dir: Path, task_id: str = "task-1") -> str:
    task_store.create("add a LICENSE file", project_dir, task_id=task_id)
    task_store.set_status(task_id, TaskStatus.RUNNING)
    return task_id


def test_create_persists_pending_task(task_store: TaskStore, project_dir: Path) -> None:
    task = task_store.create("add a LICENSE file", project_dir, yolo=True)

    assert task.status == TaskStatus.PENDING
    assert task.iteration_count == 0
    assert task.yolo is True
    assert task_store.task_record_path(task.task_id).is_file()
    events = task_store.list_events(task.task_id)
    assert [event.event_type for event in events] == ["created"]


def test_create_rejects_empty_prompt_and_bad_id(task_store: TaskStore, project_dir: Path) -> None:
    with pytest.raises(ValueError, match="non-empty"):
        task_store.create("   ", project_dir)
    with pytest.raises(ValueError, match="Invalid task id"):
        task_store.create("goal", project_dir, task_id="../escape")


def test_get_unknown_task_raises(task_store: TaskStore) -> None:
    with pytest.raises(TaskNotFound, match="missing-task"):
        task_store.get("missing-task")


def test_unknown_task_leaves_no_directory_behind(task_store: TaskStore) -> None:
    operations = [
        lambda: task_store.get("typo-id"),
        lambda: task_store.reload("typo-id"),
        lambda: task_store.request_cancel("typo-id"),
        lambda: task_store.set_status("typo-id", TaskStatus.RUNNING),
        lambda: task_store.append_iteration("typo-id", _iteration(1)),
        lambda: task_store.record_git_commit("typo-id", start="abc123"),
        lambda: task_store.add_event("typo-id", event_type="note"),
    ]

    for operation in operations:
        with pytest.raises(TaskNotFound, match="typo-id"):
            operation()

    assert not (task_store.tasks_dir / "typo-id").exists()
    assert task_store.list_tasks() == []


def test_iterations_must_be_contiguous(task_store: TaskStore, project_dir: Path) -> None:
    task_id = _running_task(task_store, project_dir)

    task_store.append_iteration(task_id, _iteration(1))
    with pytest.raises(InvalidSequence):
        task_store.append_iteration(task_id, _iteration(3))
    with pytest.raises(InvalidSequence):
        task_store.append_iteration(task_id, _iteration(1))
    task = task_store.append_iteration(task_id, _iteration(2))

    assert task.iteration_count == 2
    assert [item.sequence for item in task_store.list_iterations(task_id)] == [1, 2]


def test_concurrent_appends_of_same_sequence_admit_one(
    task_store: TaskStore,
    project_dir: Path,
) -> None:
    task_id = _running_task(task_store, project_dir)
    barrier = threading.Barrier(6)
    outcomes: list[str] = []
    outcomes_lock = threading.Lock()

    def _append() -> None:
        barrier.wait()
        try:
            task_store.append_iteration(task_id, _iteration(1))
            result = "ok"
        except InvalidSequence:
            result = "rejected"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_append) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("rejected") == 5
    assert len(task_store.list_iterations(task_id)) == 1


def test_append_requires_running_task(task_store: TaskStore, project_dir: Path) -> None:
    task = task_store.create("goal", project_dir)

    with pytest.raises(InvalidTransition):
        task_store.append_iteration(task.task_id, _iteration(1))


def test_cancelled_invocation_is_never_recorded(task_store: TaskStore, project_dir: Path) -> None:
    task_id = _running_task(task_store, project_dir)

    with pytest.raises(ValueError, match="not recorded"):
        task_store.append_iteration(task_id, _iteration(1, IterationClass.CANCELLED))


def test_terminal_status_is_final(task_store: TaskStore, project_dir: Path) -> None:
    task_id = _running_task(task_store, project_dir)

    task = task_store.set_status(
        task_id,
        TaskStatus.CONVERGED,
        reason=TerminalReason.GOAL_SATISFIED,
        detail="done",
    )

    assert task.archived_at is not None
    with pytest.raises(InvalidTransition):
        task_store.set_status(task_id, TaskStatus.RUNNING)
    with pytest.raises(InvalidTransition):
        task_store.set_status(task_id, TaskStatus.FAILED, reason=TerminalReason.INTERNAL_ERROR)
    with pytest.raises(InvalidTransition):
        task_store.append_iteration(task_id, _iteration(1))


def test_terminal_status_requires_reason(task_store: TaskStore, project_dir: Path) -> None:
    task_id = _running_task(task_store, project_dir)

    with pytest.raises(ValueError, match="requires a terminal reason"):
        task_store.set_status(task_id, TaskStatus.FAILED)
    with pytest.raises(ValueError, match="must not carry a reason"):
        task_store.set_status(task_id, TaskStatus.RUNNING, reason=TerminalReason.STALLED)


def test_fresh_store_sees_last_durable_state(task_store: TaskStore, project_dir: Path) -> None:
    task_id = _running_task(task_store, project_dir)
    task_store.append_iteration(task_id, _iteration(1))
    task_store.append_iteration(task_id, _iteration(2, IterationClass.NO_CHANGE))

    restarted = TaskStore(task_store.root_dir)
    task = restarted.get(task_id)

    assert task.status == TaskStatus.RUNNING
    assert task.iteration_count == 2
    assert [item.classification for item in restarted.list_iterations(task_id)] == [
        IterationClass.PROGRESS,
        IterationClass.NO_CHANGE,
    ]


def test_iteration_log_wins_over_lagging_task_record(
    task_store: TaskStore,
    project_dir: Path,
) -> None:
    task_id = _running_task(task_store, project_dir)
    task_store.append_iteration(task_id, _iteration(1))
    record_path = task_store.task_record_path(task_id)
    record = load_json(record_path)
    record["iteration_count"] = 0
    write_json(record_path, record)

    restarted = TaskStore(task_store.root_dir)

    assert restarted.get(task_id).iteration_count == 1
    restarted.append_iteration(task_id, _iteration(2))


def test_torn_iteration_line_is_dropped_on_restart(
    task_store: TaskStore,
    project_dir: Path,
) -> None:
    task_id = _running_task(task_store, project_dir)
    task_store.append_iteration(task_id, _iteration(1))
    log = task_store.task_dir(task_id) / "iterations.jsonl"
    with log.open("a", encoding="utf-8") as handle:
        handle.write('{"sequence": 2, "classif')

    restarted = TaskStore(task_store.root_dir)
    assert restarted.get(task_id).iteration_count == 1
    restarted.append_iteration(task_id, _iteration(2))

    assert [item.sequence for item in restarted.list_iterations(task_id)] == [1, 2]


def test_request_cancel_is_durable(task_store: TaskStore, project_dir: Path) -> None:
    task_id = _running_task(task_store, project_dir)

    assert task_store.request_cancel(task_id) is True
    assert TaskStore(task_store.root_dir).cancel_requested(task_id)
    assert "cancel_requested" in [event.event_type for event in task_store.list_events(task_id)]


def test_request_cancel_on_terminal_task_is_refused(
    task_store: TaskStore,
    project_dir: Path,
) -> None:
    task_id = _running_task(task_store, project_dir)
    task_store.set_status(task_id, TaskStatus.FAILED, reason=TerminalReason.STALLED)

    assert task_store.request_cancel(task_id) is False
    assert not task_store.cancel_requested(task_id)


def test_owner_lock_is_exclusive(task_store: TaskStore, project_dir: Path) -> None:
    task = task_store.create("goal", project_dir)
    other = TaskStore(task_store.root_dir)

    with task_store.owner_lock(task.task_id):
        with pytest.raises(TaskOwnershipError):
            with other.owner_lock(task.task_id):
                pass

    with other.owner_lock(task.task_id):
        pass


def test_list_tasks_filters_by_status(task_store: TaskStore, project_dir: Path) -> None:
    pending = task_store.create("first", project_dir, task_id="task-a")
    running_id = _running_task(task_store, project_dir, task_id="task-b")

    assert {task.task_id for task in task_store.list_tasks()} == {pending.task_id, running_id}
    assert [task.task_id for task in task_store.list_tasks(status=TaskStatus.RUNNING)] == [
        running_id,
    ]
    assert len(task_store.list_tasks(limit=1)) == 1


def test_git_commit_range_is_recorded(task_store: TaskStore, project_dir: Path) -> None:
    task_id = _running_task(task_store, project_dir)

    task_store.record_git_commit(task_id, start="a" * 40)
    task_store.record_git_commit(task_id, end="b" * 40)

    task = TaskStore(task_store.root_dir).get(task_id)
    assert task.git_commit_start == "a" * 40
    assert task.git_commit_end == "b" * 40
