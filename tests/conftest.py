"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from codeloop.config import AgentSettings, KnowledgeSettings, LoopSettings, Settings
from codeloop.reconcile.knowledge import KnowledgeStore
from codeloop.reconcile.task_store import TaskStore

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m codeloop.reconcile.backend.echo_agent "
    "--manifest {manifest} --prompt-file {prompt_file}"
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep CODELOOP_* variables from the developer shell out of tests."""
    for name in list(os.environ):
        if name.startswith("CODELOOP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture()
def task_store(project_dir: Path) -> TaskStore:
    return TaskStore(project_dir / ".codeloop")


@pytest.fixture()
def knowledge_store(project_dir: Path) -> KnowledgeStore:
    return KnowledgeStore(project_dir / ".codeloop")


@pytest.fixture()
def fast_settings(project_dir: Path) -> Settings:
    """Settings with zero backoff and the echo agent."""
    return Settings(
        working_dir=project_dir,
        loop=LoopSettings(retry_base_seconds=0.0, retry_max_seconds=0.0),
        agent=AgentSettings(
            agent="custom",
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            yolo_args="",
            safe_args="",
            timeout_seconds=60,
            graceful_shutdown_seconds=1,
        ),
        knowledge=KnowledgeSettings(),
    )


@pytest.fixture()
def echo_agent(monkeypatch):
    """Point the CLI at the deterministic echo agent."""
    monkeypatch.setenv("CODELOOP_AGENT", "custom")
    monkeypatch.setenv("CODELOOP_AGENT_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
