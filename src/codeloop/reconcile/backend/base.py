"""Backend interface for agent process execution."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


class CancelToken:
    """Cooperative cancellation flag shared by a controller and its backend.

    ``poll`` lets an external source (such as a cancel marker file written by
    another process) trip the token the next time it is checked.
    """

    def __init__(self, poll: Callable[[], bool] | None = None) -> None:
        self._event = threading.Event()
        self._poll = poll

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._poll is not None and self._poll():
            self._event.set()
            return True
        return False

    def wait(self, timeout: float, *, poll_interval: float = 0.2) -> bool:
        """Sleep up to *timeout* seconds; return ``True`` early if cancelled."""

        remaining = max(0.0, timeout)
        while True:
            if self.is_cancelled():
                return True
            if remaining <= 0:
                return False
            step = min(poll_interval, remaining)
            if self._event.wait(step):
                return True
            remaining -= step


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent attempt."""

    manifest_path: Path
    working_dir: Path
    prompt: str
    prompt_file: Path
    stdout_path: Path
    stderr_path: Path
    command_template: str
    model: str
    approval_args: str
    timeout_seconds: int
    graceful_shutdown_seconds: int
    cancel_token: CancelToken | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from backend runner."""

    exit_code: int
    timed_out: bool
    cancelled: bool
    stdout_path: Path
    stderr_path: Path
    duration_ms: int


class AgentBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run an agent attempt and return execution metadata."""
