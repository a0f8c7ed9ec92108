from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from codeloop.reconcile.workspace import (
    compare_snapshots,
    current_git_commit,
    is_clean_tree,
    take_snapshot,
)

pytestmark = [
    allure.epic("Agent Adapter"),
    allure.feature("Workspace Change Detection"),
]

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.fixture()
def git_repo(project_dir: Path) -> Path:
    _git(project_dir, "init", "-q")
    (project_dir / "README.md").write_text("hello\n", "utf-8")
    _git(project_dir, "add", "README.md")
    _git(project_dir, "commit", "-q", "-m", "initial")
    return project_dir


def test_fingerprint_detects_new_and_modified_files(project_dir: Path) -> None:
    (project_dir / "main.py").write_text("print('a')\n", "utf-8")
    before = take_snapshot(project_dir, exclude=(".codeloop",))

    (project_dir / "main.py").write_text("print('a much longer line')\n", "utf-8")
    (project_dir / "pkg").mkdir()
    (project_dir / "pkg" / "mod.py").write_text("x = 1\n", "utf-8")
    after = take_snapshot(project_dir, exclude=(".codeloop",))

    change = compare_snapshots(before, after)
    assert after.mode == "fingerprint"
    assert change.changed
    assert change.files == ["main.py", "pkg/mod.py"]


def test_fingerprint_ignores_excluded_state_dir(project_dir: Path) -> None:
    before = take_snapshot(project_dir, exclude=(".codeloop",))

    (project_dir / ".codeloop").mkdir()
    (project_dir / ".codeloop" / "task.json").write_text("{}", "utf-8")
    after = take_snapshot(project_dir, exclude=(".codeloop",))

    assert not compare_snapshots(before, after).changed


def test_outside_git_has_no_head_or_clean_state(project_dir: Path) -> None:
    assert is_clean_tree(project_dir) is None


@requires_git
def test_git_mode_detects_working_tree_edits(git_repo: Path) -> None:
    before = take_snapshot(git_repo)

    (git_repo / "README.md").write_text("hello world\n", "utf-8")
    (git_repo / "LICENSE").write_text("MIT\n", "utf-8")
    after = take_snapshot(git_repo)

    change = compare_snapshots(before, after)
    assert after.mode == "git"
    assert change.changed
    assert change.files == ["LICENSE", "README.md"]


@requires_git
def test_git_mode_detects_repeated_edit_of_dirty_file(git_repo: Path) -> None:
    (git_repo / "README.md").write_text("hello world\n", "utf-8")
    before = take_snapshot(git_repo)

    (git_repo / "README.md").write_text("hello world, again\n", "utf-8")
    after = take_snapshot(git_repo)

    assert compare_snapshots(before, after).files == ["README.md"]


@requires_git
def test_git_mode_detects_commits(git_repo: Path) -> None:
    before = take_snapshot(git_repo)
    head_before = current_git_commit(git_repo)

    (git_repo / "LICENSE").write_text("MIT\n", "utf-8")
    _git(git_repo, "add", "LICENSE")
    _git(git_repo, "commit", "-q", "-m", "add license")
    after = take_snapshot(git_repo)

    change = compare_snapshots(before, after)
    assert change.changed
    assert change.files == []
    assert change.head_before == head_before
    assert change.head_after == current_git_commit(git_repo)
    assert head_before is not None
    assert len(head_before) == 40


@requires_git
def test_clean_tree_respects_exclusions(git_repo: Path) -> None:
    assert is_clean_tree(git_repo) is True

    (git_repo / ".codeloop").mkdir()
    (git_repo / ".codeloop" / "task.json").write_text("{}", "utf-8")
    assert is_clean_tree(git_repo, exclude=(".codeloop",)) is True
    assert is_clean_tree(git_repo) is False


@requires_git
def test_snapshot_of_subdirectory_uses_relative_paths(git_repo: Path) -> None:
    subdir = git_repo / "service"
    subdir.mkdir()
    before = take_snapshot(subdir)

    (subdir / "app.py").write_text("app = None\n", "utf-8")
    (git_repo / "outside.txt").write_text("ignored\n", "utf-8")
    after = take_snapshot(subdir)

    assert compare_snapshots(before, after).files == ["app.py"]
