"""Workspace change detection: git-aware, with a file fingerprint fallback."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

MAX_FINGERPRINT_FILES = 20_000
_GIT_TIMEOUT_SECONDS = 30
_ALWAYS_EXCLUDED = (".git",)

Fingerprint = tuple[int, int]


@dataclass(slots=True)
class WorkspaceSnapshot:
    """Point-in-time view of the working directory."""

    mode: str
    head: str | None = None
    files: dict[str, Fingerprint] = field(default_factory=dict)
    truncated: bool = False


@dataclass(slots=True)
class ChangeSummary:
    """What an agent invocation did to the working directory."""

    changed: bool
    files: list[str] = field(default_factory=list)
    head_before: str | None = None
    head_after: str | None = None
    mode: str = "fingerprint"


def take_snapshot(working_dir: Path, *, exclude: tuple[str, ...] = ()) -> WorkspaceSnapshot:
    """Snapshot *working_dir*; ``exclude`` holds top-level names to ignore."""

    excluded = set(_ALWAYS_EXCLUDED) | set(exclude)
    head = current_git_commit(working_dir)
    dirty = _git_dirty_paths(working_dir)
    if dirty is not None:
        dirty_files = {
            path: _fingerprint(working_dir / path)
            for path in dirty
            if path.split("/", 1)[0] not in excluded
        }
        return WorkspaceSnapshot(mode="git", head=head, files=dirty_files)

    files: dict[str, Fingerprint] = {}
    truncated = False
    for root, dirnames, filenames in os.walk(working_dir):
        root_path = Path(root)
        if root_path == working_dir:
            dirnames[:] = [name for name in dirnames if name not in excluded]
        dirnames.sort()
        for filename in sorted(filenames):
            path = root_path / filename
            relative = path.relative_to(working_dir).as_posix()
            if relative in excluded:
                continue
            if len(files) >= MAX_FINGERPRINT_FILES:
                truncated = True
                break
            files[relative] = _fingerprint(path)
        if truncated:
            logger.warning(
                "Workspace fingerprint truncated at %d files in %s",
                MAX_FINGERPRINT_FILES,
                working_dir,
            )
            break
    return WorkspaceSnapshot(mode="fingerprint", files=files, truncated=truncated)


def compare_snapshots(before: WorkspaceSnapshot, after: WorkspaceSnapshot) -> ChangeSummary:
    changed_files = sorted(
        path
        for path in set(before.files) | set(after.files)
        if before.files.get(path) != after.files.get(path)
    )
    head_moved = before.head != after.head
    return ChangeSummary(
        changed=bool(changed_files) or head_moved,
        files=changed_files,
        head_before=before.head,
        head_after=after.head,
        mode=after.mode,
    )


def current_git_commit(working_dir: Path) -> str | None:
    """Return the full HEAD SHA, or ``None`` outside a git repo or without commits."""

    output = _git(working_dir, "rev-parse", "--verify", "HEAD")
    if output is None:
        return None
    sha = output.strip()
    return sha or None


def is_clean_tree(working_dir: Path, *, exclude: tuple[str, ...] = ()) -> bool | None:
    """Whether git reports no outstanding changes; ``None`` when not a git repo."""

    dirty = _git_dirty_paths(working_dir)
    if dirty is None:
        return None
    excluded = set(exclude)
    return not [path for path in dirty if path.split("/", 1)[0] not in excluded]


def _git_dirty_paths(working_dir: Path) -> list[str] | None:
    prefix = _git(working_dir, "rev-parse", "--show-prefix")
    if prefix is None:
        return None
    prefix = prefix.strip()
    output = _git(working_dir, "status", "--porcelain", "-z", "--untracked-files=all", "--", ".")
    if output is None:
        return None
    paths: list[str] = []
    entries = output.split("\0")
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        paths.append(path)
        if "R" in status or "C" in status:
            # Renames and copies carry the source path as the next entry.
            if index < len(entries) and entries[index]:
                paths.append(entries[index])
            index += 1
    # Porcelain paths are relative to the repository root.
    return [path[len(prefix) :] if path.startswith(prefix) else path for path in paths]


def _git(working_dir: Path, *args: str) -> str | None:
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=working_dir,
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.debug("git %s failed in %s: %s", " ".join(args), working_dir, error)
        return None
    if completed.returncode != 0:
        return None
    return completed.stdout


def _fingerprint(path: Path) -> Fingerprint:
    try:
        stat = path.stat()
    except OSError:
        return (-1, -1)
    return (stat.st_size, stat.st_mtime_ns)
