from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import allure

from codeloop.config import AgentSettings
from codeloop.reconcile.adapter import AgentAdapter
from codeloop.reconcile.backend import CancelToken
from codeloop.reconcile.context import IterationContext
from codeloop.reconcile.models import IterationClass

pytestmark = [
    allure.epic("Agent Adapter"),
    allure.feature("Invocation Outcomes"),
]

_RESULT_HELPER = """
import json, os, sys
from pathlib import Path

manifest = json.loads(Path(os.environ["CODELOOP_MANIFEST"]).read_text("utf-8"))


def report(payload):
    Path(manifest["output_result_path"]).write_text(json.dumps(payload), "utf-8")
"""


def _agent(tmp_path: Path, name: str, body: str, **overrides: object) -> AgentSettings:
    agents_dir = tmp_path / "agents"
    agents_dir.mkdir(exist_ok=True)
    script = agents_dir / f"{name}.py"
    script.write_text(_RESULT_HELPER + body, "utf-8")
    settings = AgentSettings(
        agent="custom",
        command_template=(
            f"{shlex.quote(sys.executable)} {shlex.quote(str(script))} "
            "{approval_args} {prompt_file}"
        ),
        yolo_args="--yolo-mode",
        safe_args="--safe-mode",
        timeout_seconds=30,
        graceful_shutdown_seconds=1,
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def _context(
    tmp_path: Path,
    working_dir: Path,
    *,
    attempt: int = 1,
    output_dir: Path | None = None,
) -> IterationContext:
    return IterationContext(
        task_id="task-1",
        sequence=1,
        attempt=attempt,
        prompt="Add a LICENSE file with MIT text",
        working_dir=working_dir,
        output_dir=output_dir or tmp_path / "state" / "iterations" / "0001",
        max_iterations=5,
    )


def test_result_file_reports_goal_and_facts(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(
        tmp_path,
        "goal",
        'Path("LICENSE").write_text("MIT\\n", "utf-8")\n'
        "report({\n"
        '    "status": "goal_satisfied",\n'
        '    "summary": "Added LICENSE",\n'
        '    "facts": [{"key": "license", "content": "MIT"}],\n'
        "})\n",
    )

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.GOAL_SATISFIED
    assert outcome.summary == "Added LICENSE"
    assert [(fact.key, fact.content) for fact in outcome.facts] == [("license", "MIT")]
    assert outcome.change.changed
    assert outcome.change.files == ["LICENSE"]
    assert outcome.exit_code == 0
    assert Path(outcome.context_path).is_file()


def test_agent_receives_context_and_approval_args(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(
        tmp_path,
        "inspect",
        "prompt = Path(sys.argv[-1]).read_text('utf-8')\n"
        "context = json.loads(Path(manifest['context_json_path']).read_text('utf-8'))\n"
        "report({\n"
        "    'status': 'progress',\n"
        "    'summary': json.dumps({\n"
        "        'argv': sys.argv[1:-1],\n"
        "        'goal_in_prompt': 'Add a LICENSE file' in prompt,\n"
        "        'context_task': context['task_id'],\n"
        "        'yolo_env': os.environ['CODELOOP_YOLO'],\n"
        "    }),\n"
        "})\n",
    )

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=True,
        cancel_token=CancelToken(),
    )

    seen = json.loads(outcome.summary)
    assert seen == {
        "argv": ["--yolo-mode"],
        "goal_in_prompt": True,
        "context_task": "task-1",
        "yolo_env": "1",
    }


def test_stdout_status_line_is_used_without_result_file(
    tmp_path: Path,
    project_dir: Path,
) -> None:
    settings = _agent(
        tmp_path,
        "status_line",
        "print('Everything is already in place.')\nprint('CODELOOP_STATUS: no_change')\n",
    )

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.NO_CHANGE
    assert outcome.summary == "Everything is already in place."


def test_silent_agent_is_classified_by_workspace_diff(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(tmp_path, "silent", 'Path("notes.txt").write_text("x", "utf-8")\n')

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.PROGRESS
    assert outcome.change.files == ["notes.txt"]


def test_state_dir_inside_project_is_not_a_change(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(tmp_path, "idle", 'print("nothing to do")\n')
    output_dir = project_dir / ".codeloop" / "tasks" / "task-1" / "iterations" / "0001"

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir, output_dir=output_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert (output_dir / "attempt-1").is_dir()
    assert outcome.classification == IterationClass.NO_CHANGE
    assert not outcome.change.changed
    assert outcome.change.files == []


def test_stream_disconnect_is_recoverable(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(
        tmp_path,
        "stream",
        "print('stream disconnected before completion', file=sys.stderr)\nsys.exit(1)\n",
    )

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.ERROR_RECOVERABLE
    assert outcome.reason_code == "custom_stream_transient"
    assert outcome.failure is not None
    assert outcome.failure["matched_rule"] == "stream_transient"
    assert "stream disconnected" in outcome.summary


def test_auth_failure_is_fatal(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(
        tmp_path,
        "auth",
        "print('Error: Invalid API key', file=sys.stderr)\nsys.exit(1)\n",
    )

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.ERROR_FATAL
    assert outcome.exit_code == 1


def test_reported_error_is_recoverable(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(
        tmp_path,
        "reported",
        'report({"status": "error", "error": "tests need network", "fatal": False})\n',
    )

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.ERROR_RECOVERABLE
    assert outcome.reason_code == "custom_reported_error"
    assert outcome.summary == "tests need network"


def test_timeout_is_recoverable(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(tmp_path, "slow", "import time\ntime.sleep(30)\n", timeout_seconds=1)

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.ERROR_RECOVERABLE
    assert outcome.reason_code == "agent_timeout"


def test_missing_agent_binary_is_fatal(tmp_path: Path, project_dir: Path) -> None:
    settings = AgentSettings(
        agent="custom",
        command_template="definitely-not-an-agent-binary {prompt}",
        yolo_args="",
        safe_args="",
    )

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.ERROR_FATAL
    assert outcome.reason_code == "backend_start_failed"


def test_invalid_working_dir_is_fatal(tmp_path: Path) -> None:
    settings = _agent(tmp_path, "unused", "")

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, tmp_path / "missing"),
        yolo=False,
        cancel_token=CancelToken(),
    )

    assert outcome.classification == IterationClass.ERROR_FATAL
    assert outcome.reason_code == "invalid_working_dir"


def test_cancelled_token_skips_invocation(tmp_path: Path, project_dir: Path) -> None:
    settings = _agent(tmp_path, "never", 'Path("ran.txt").write_text("x", "utf-8")\n')
    token = CancelToken()
    token.cancel()

    outcome = AgentAdapter(settings).invoke(
        _context(tmp_path, project_dir),
        yolo=False,
        cancel_token=token,
    )

    assert outcome.classification == IterationClass.CANCELLED
    assert not (project_dir / "ran.txt").exists()


def test_stale_result_from_previous_attempt_is_discarded(
    tmp_path: Path,
    project_dir: Path,
) -> None:
    context = _context(tmp_path, project_dir)
    stale = context.output_dir / "attempt-1" / "agent_result.json"
    stale.parent.mkdir(parents=True)
    stale.write_text(json.dumps({"status": "goal_satisfied"}), "utf-8")
    settings = _agent(tmp_path, "quiet", "")

    outcome = AgentAdapter(settings).invoke(context, yolo=False, cancel_token=CancelToken())

    assert outcome.classification == IterationClass.NO_CHANGE
