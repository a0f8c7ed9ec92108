from __future__ import annotations

import shlex
import sys
import threading
from pathlib import Path

import allure
import pytest

from codeloop.reconcile.backend import (
    AgentRunRequest,
    BackendRunError,
    CancelToken,
    CliAgentBackend,
)
from codeloop.reconcile.backend.cli_backend import TIMEOUT_EXIT_CODE, build_run_args

pytestmark = [
    allure.epic("Agent Adapter"),
    allure.feature("Agent Command Rendering"),
]

PYTHON = shlex.quote(sys.executable)


def _script(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "agent.py"
    path.write_text(body, "utf-8")
    return path


def _request(  # noqa: PLR0913
    tmp_path: Path,
    working_dir: Path,
    command_template: str,
    *,
    timeout_seconds: int = 30,
    cancel_token: CancelToken | None = None,
    env: dict[str, str] | None = None,
) -> AgentRunRequest:
    return AgentRunRequest(
        manifest_path=tmp_path / "manifest.json",
        working_dir=working_dir,
        prompt="add a LICENSE file",
        prompt_file=tmp_path / "prompt.txt",
        stdout_path=tmp_path / "out" / "stdout.log",
        stderr_path=tmp_path / "out" / "stderr.log",
        command_template=command_template,
        model="",
        approval_args="",
        timeout_seconds=timeout_seconds,
        graceful_shutdown_seconds=1,
        cancel_token=cancel_token,
        env=env or {},
    )


def test_build_run_args_quotes_values_and_keeps_approval_args_raw() -> None:
    argv = build_run_args(
        command_template="agent {approval_args} --model {model} --manifest {manifest} {prompt}",
        model="gpt-5-codex",
        prompt='hello "world" $HOME',
        prompt_file=Path("prompt.txt"),
        manifest_path=Path("m file.json"),
        approval_args="--sandbox workspace-write",
    )

    assert argv == [
        "agent",
        "--sandbox",
        "workspace-write",
        "--model",
        "gpt-5-codex",
        "--manifest",
        "m file.json",
        'hello "world" $HOME',
    ]


def test_build_run_args_with_empty_approval_args() -> None:
    argv = build_run_args(
        command_template="agent {approval_args} --prompt-file {prompt_file}",
        model="",
        prompt="ignored",
        prompt_file=Path("/tmp/prompt file.txt"),
        manifest_path=Path("manifest.json"),
        approval_args="",
    )

    assert argv == ["agent", "--prompt-file", "/tmp/prompt file.txt"]


def test_build_run_args_requires_prompt_placeholder() -> None:
    with pytest.raises(BackendRunError, match=r"\{prompt\}") as error:
        build_run_args(
            command_template="agent --model {model}",
            model="m",
            prompt="p",
            prompt_file=Path("prompt.txt"),
            manifest_path=Path("manifest.json"),
            approval_args="",
        )
    assert error.value.transient is False


def test_build_run_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(BackendRunError, match="placeholder"):
        build_run_args(
            command_template="agent --manifest {task_manifest} {prompt}",
            model="m",
            prompt="p",
            prompt_file=Path("prompt.txt"),
            manifest_path=Path("manifest.json"),
            approval_args="",
        )


def test_run_captures_output_in_working_dir(tmp_path: Path, project_dir: Path) -> None:
    script = _script(
        tmp_path,
        "import os, sys\n"
        "open('created.txt', 'w').write(sys.argv[1])\n"
        "print('task', os.environ['CODELOOP_TASK_ID'])\n"
        "print('warning', file=sys.stderr)\n",
    )

    result = CliAgentBackend().run(
        _request(
            tmp_path,
            project_dir,
            f"{PYTHON} {script} {{prompt}}",
            env={"CODELOOP_TASK_ID": "task-1"},
        ),
    )

    assert result.exit_code == 0
    assert not result.timed_out
    assert not result.cancelled
    assert (project_dir / "created.txt").read_text("utf-8") == "add a LICENSE file"
    assert result.stdout_path.read_text("utf-8") == "task task-1\n"
    assert result.stderr_path.read_text("utf-8") == "warning\n"


def test_run_reports_nonzero_exit(tmp_path: Path, project_dir: Path) -> None:
    script = _script(tmp_path, "import sys\nsys.exit(3)\n")

    result = CliAgentBackend().run(_request(tmp_path, project_dir, f"{PYTHON} {script} {{prompt}}"))

    assert result.exit_code == 3


def test_missing_command_is_not_transient(tmp_path: Path, project_dir: Path) -> None:
    with pytest.raises(BackendRunError, match="not found") as error:
        CliAgentBackend().run(
            _request(tmp_path, project_dir, "definitely-not-an-agent-binary {prompt}"),
        )
    assert error.value.transient is False


def test_run_times_out(tmp_path: Path, project_dir: Path) -> None:
    script = _script(tmp_path, "import time\ntime.sleep(30)\n")

    result = CliAgentBackend().run(
        _request(tmp_path, project_dir, f"{PYTHON} {script} {{prompt}}", timeout_seconds=1),
    )

    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.duration_ms < 10_000


def test_cancel_token_stops_process(tmp_path: Path, project_dir: Path) -> None:
    script = _script(tmp_path, "import time\ntime.sleep(30)\n")
    token = CancelToken()
    timer = threading.Timer(0.5, token.cancel)
    timer.start()

    try:
        result = CliAgentBackend().run(
            _request(tmp_path, project_dir, f"{PYTHON} {script} {{prompt}}", cancel_token=token),
        )
    finally:
        timer.cancel()

    assert result.cancelled
    assert not result.timed_out
    assert result.duration_ms < 10_000


def test_cancel_kills_process_that_ignores_sigterm(tmp_path: Path, project_dir: Path) -> None:
    script = _script(
        tmp_path,
        "import signal, time\nsignal.signal(signal.SIGTERM, signal.SIG_IGN)\ntime.sleep(30)\n",
    )
    token = CancelToken()
    timer = threading.Timer(0.5, token.cancel)
    timer.start()

    try:
        result = CliAgentBackend().run(
            _request(tmp_path, project_dir, f"{PYTHON} {script} {{prompt}}", cancel_token=token),
        )
    finally:
        timer.cancel()

    assert result.cancelled
    assert result.exit_code != 0
    assert result.duration_ms < 10_000


def test_cancel_token_poll_and_wait() -> None:
    flag = {"value": False}
    token = CancelToken(poll=lambda: flag["value"])

    assert token.wait(0) is False
    flag["value"] = True
    assert token.is_cancelled()
    assert token.wait(5) is True
