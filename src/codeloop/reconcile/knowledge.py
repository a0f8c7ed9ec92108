"""Project knowledge base shared across tasks: one JSON document per key."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from codeloop.reconcile.models import KnowledgeEntry, KnowledgeSource
from codeloop.reconcile.storage import (
    from_iso,
    load_json,
    locked_file,
    to_iso,
    utc_now,
    write_json,
)

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]{0,127}$")
_SUFFIX = ".json"


def normalize_key(key: str) -> str:
    """Return the canonical form of a knowledge key or raise ``ValueError``."""

    normalized = key.strip().lower()
    if not _KEY_PATTERN.match(normalized) or ".." in normalized:
        raise ValueError(
            f"Invalid knowledge key {key!r}: use lowercase letters, digits, '.', '_' or '-'.",
        )
    return normalized


class KnowledgeStore:
    """Key-value store of durable project facts.

    Writes to one key are atomic and serialized (thread lock, then file lock,
    then atomic replace). Concurrent writers resolve last-write-wins by the
    write timestamp taken when ``upsert`` is called.
    """

    def __init__(self, root_dir: Path, *, content_max_chars: int = 2_000) -> None:
        self.root_dir = root_dir
        self.knowledge_dir = root_dir / "knowledge"
        self.content_max_chars = content_max_chars
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def get(self, key: str) -> KnowledgeEntry | None:
        path = self._path(normalize_key(key))
        if not path.is_file():
            return None
        return _entry_from_record(load_json(path))

    def list(self, prefix: str | None = None) -> list[KnowledgeEntry]:
        """Return every readable entry, sorted by key, optionally filtered by key prefix."""

        if not self.knowledge_dir.exists():
            return []
        normalized_prefix = prefix.strip().lower() if prefix else None
        entries: list[KnowledgeEntry] = []
        for path in sorted(self.knowledge_dir.glob(f"*{_SUFFIX}")):
            key = path.name[: -len(_SUFFIX)]
            if normalized_prefix and not key.startswith(normalized_prefix):
                continue
            try:
                entries.append(_entry_from_record(load_json(path)))
            except (ValueError, TypeError, KeyError) as error:
                logger.warning("Skipping unreadable knowledge entry %s: %s", path, error)
        return entries

    def upsert(
        self,
        key: str,
        content: str,
        source: KnowledgeSource,
        *,
        written_at: datetime | None = None,
    ) -> KnowledgeEntry:
        """Insert or update one entry and return the entry now on disk.

        Re-observing identical content bumps ``confirmations``; new content
        replaces the old and resets it. A write older than the stored entry
        loses and leaves it untouched.
        """

        normalized = normalize_key(key)
        content = content.strip()
        if not content:
            raise ValueError(f"Knowledge entry {normalized!r} must have non-empty content.")
        if len(content) > self.content_max_chars:
            logger.warning(
                "Truncating knowledge entry %s from %d to %d chars",
                normalized,
                len(content),
                self.content_max_chars,
            )
            content = content[: self.content_max_chars]
        written_at = written_at or utc_now()

        path = self._path(normalized)
        with self._key_lock(normalized), locked_file(path):
            existing = self._load_existing(path)
            if existing is not None and existing.updated_at > written_at:
                logger.debug(
                    "Knowledge write for %s lost to a newer entry (%s > %s)",
                    normalized,
                    existing.updated_at.isoformat(),
                    written_at.isoformat(),
                )
                return existing

            if existing is None:
                entry = KnowledgeEntry(
                    key=normalized,
                    content=content,
                    source_task_id=source.task_id,
                    source_iteration=source.iteration,
                    confirmations=1,
                    created_at=written_at,
                    updated_at=written_at,
                )
            else:
                same = existing.content == content
                entry = KnowledgeEntry(
                    key=normalized,
                    content=content,
                    source_task_id=source.task_id,
                    source_iteration=source.iteration,
                    confirmations=existing.confirmations + 1 if same else 1,
                    created_at=existing.created_at,
                    updated_at=written_at,
                )
            write_json(path, _entry_to_record(entry))
        logger.info(
            "Knowledge entry upserted: key=%s task_id=%s confirmations=%d",
            normalized,
            source.task_id,
            entry.confirmations,
        )
        return entry

    def delete(self, key: str) -> bool:
        """Remove an entry. Maintenance only; the loop never calls it."""

        normalized = normalize_key(key)
        path = self._path(normalized)
        with self._key_lock(normalized), locked_file(path):
            if not path.is_file():
                return False
            path.unlink()
        logger.info("Knowledge entry deleted: key=%s", normalized)
        return True

    def _load_existing(self, path: Path) -> KnowledgeEntry | None:
        if not path.is_file():
            return None
        try:
            return _entry_from_record(load_json(path))
        except (ValueError, TypeError) as error:
            logger.warning("Overwriting unreadable knowledge entry %s: %s", path, error)
            return None

    def _path(self, normalized_key: str) -> Path:
        return self.knowledge_dir / f"{normalized_key}{_SUFFIX}"

    @contextmanager
    def _key_lock(self, normalized_key: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(normalized_key, threading.Lock())
        with lock:
            yield


def _entry_to_record(entry: KnowledgeEntry) -> dict[str, Any]:
    return {
        "key": entry.key,
        "content": entry.content,
        "source_task_id": entry.source_task_id,
        "source_iteration": entry.source_iteration,
        "confirmations": entry.confirmations,
        "created_at": to_iso(entry.created_at),
        "updated_at": to_iso(entry.updated_at),
    }


def _entry_from_record(raw: dict[str, Any]) -> KnowledgeEntry:
    key = raw.get("key")
    content = raw.get("content")
    if not isinstance(key, str) or not key:
        raise ValueError("knowledge.key must be a non-empty string")
    if not isinstance(content, str):
        raise TypeError("knowledge.content must be a string")
    source_iteration = raw.get("source_iteration")
    try:
        return KnowledgeEntry(
            key=key,
            content=content,
            source_task_id=str(raw.get("source_task_id", "")),
            source_iteration=int(source_iteration) if source_iteration is not None else None,
            confirmations=int(raw.get("confirmations", 1)),
            created_at=from_iso(str(raw["created_at"])),
            updated_at=from_iso(str(raw["updated_at"])),
        )
    except KeyError as error:
        raise ValueError(f"Knowledge entry {key} missing field: {error}") from error
