"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from pathlib import Path
from typing import IO

from codeloop.reconcile.backend.base import AgentRunRequest, AgentRunResult, CancelToken

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_POLL_INTERVAL_SECONDS = 0.1
_KILL_WAIT_SECONDS = 2


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Execute the configured agent command template as a child process."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)

        run_args = build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=request.prompt_file,
            manifest_path=request.manifest_path,
            approval_args=request.approval_args,
        )
        env = os.environ.copy()
        env.update(request.env)

        try:
            with (
                request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                return _run_subprocess_with_cancel(
                    run_args=run_args,
                    cwd=request.working_dir,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    cancel_token=request.cancel_token,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    stdout_path=request.stdout_path,
                    stderr_path=request.stderr_path,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except PermissionError as error:
            raise BackendRunError(
                f"CLI agent command is not executable: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI agent failed to start: {error}",
                transient=True,
            ) from error


def build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    manifest_path: Path,
    approval_args: str,
) -> list[str]:
    """Render the command template into argv.

    Values are shell-quoted, except ``{approval_args}`` which is inserted raw
    so it can expand into several flags.
    """

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            manifest=shlex.quote(str(manifest_path)),
            approval_args=approval_args,
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI agent command template rendered empty command.",
            transient=False,
        )
    return argv


def _run_subprocess_with_cancel(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    cancel_token: CancelToken | None,
    graceful_shutdown_seconds: int,
    stdout_path: Path,
    stderr_path: Path,
) -> AgentRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
        start_new_session=True,
    )
    start_monotonic = time.monotonic()

    def _result(exit_code: int, *, timed_out: bool = False, cancelled: bool = False) -> AgentRunResult:
        return AgentRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=cancelled,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            duration_ms=int((time.monotonic() - start_monotonic) * 1000),
        )

    while True:
        returncode = process.poll()
        if returncode is not None:
            return _result(returncode)

        if time.monotonic() - start_monotonic >= timeout_seconds:
            logger.warning("Agent process %s timed out after %ss", process.pid, timeout_seconds)
            _terminate_process(process, graceful_seconds=graceful_shutdown_seconds)
            return _result(TIMEOUT_EXIT_CODE, timed_out=True)

        if cancel_token is not None and cancel_token.is_cancelled():
            logger.info("Cancelling agent process %s", process.pid)
            returncode = _terminate_process(process, graceful_seconds=graceful_shutdown_seconds)
            return _result(returncode if returncode is not None else -signal.SIGKILL, cancelled=True)

        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str], *, graceful_seconds: int) -> int | None:
    """SIGTERM the process group, then SIGKILL it after the grace period."""

    _signal_group(process, signal.SIGTERM)
    try:
        return process.wait(timeout=max(0, graceful_seconds))
    except subprocess.TimeoutExpired:
        pass
    _signal_group(process, signal.SIGKILL)
    try:
        return process.wait(timeout=_KILL_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        logger.error("Agent process %s did not exit after SIGKILL", process.pid)
        return None


def _signal_group(process: subprocess.Popen[str], sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return
    except OSError:
        try:
            process.send_signal(sig)
        except OSError:
            return
