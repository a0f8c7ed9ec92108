"""Per-iteration context assembly: the only memory a fresh agent process gets."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from codeloop.config import KnowledgeSettings, LoopSettings
from codeloop.reconcile.models import Iteration, KnowledgeEntry, Task
from codeloop.reconcile.storage import to_iso

CONTINUE_PREAMBLE = (
    "Continue. The previous attempt of this iteration ended early ({reason}). "
    "Pick up from the current state of the working directory."
)

_TRUNCATION_MARK = " [...]"


@dataclass(slots=True)
class IterationSummary:
    """Bounded view of one prior iteration of the same task."""

    sequence: int
    classification: str
    summary: str


@dataclass(slots=True)
class KnowledgeItem:
    """Knowledge entry as presented to the agent."""

    key: str
    content: str
    confirmations: int
    updated_at: datetime
    stale: bool


@dataclass(slots=True)
class IterationContext:
    """Everything one agent invocation is told."""

    task_id: str
    sequence: int
    attempt: int
    prompt: str
    working_dir: Path
    output_dir: Path
    max_iterations: int
    history: list[IterationSummary] = field(default_factory=list)
    knowledge: list[KnowledgeItem] = field(default_factory=list)
    resume_note: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "sequence": self.sequence,
            "attempt": self.attempt,
            "max_iterations": self.max_iterations,
            "prompt": self.prompt,
            "working_dir": str(self.working_dir),
            "resume_note": self.resume_note,
            "history": [
                {
                    "sequence": item.sequence,
                    "classification": item.classification,
                    "summary": item.summary,
                }
                for item in self.history
            ],
            "knowledge": [
                {
                    "key": item.key,
                    "content": item.content,
                    "confirmations": item.confirmations,
                    "updated_at": to_iso(item.updated_at),
                    "stale": item.stale,
                }
                for item in self.knowledge
            ],
        }


def build_iteration_context(  # noqa: PLR0913
    *,
    task: Task,
    sequence: int,
    attempt: int,
    iterations: list[Iteration],
    knowledge_entries: list[KnowledgeEntry],
    loop_settings: LoopSettings,
    knowledge_settings: KnowledgeSettings,
    output_dir: Path,
    now: datetime,
    resume_note: str | None = None,
) -> IterationContext:
    """Assemble context from this task's own history and the shared knowledge base."""

    recent = iterations[-loop_settings.history_limit :] if loop_settings.history_limit else []
    history = [
        IterationSummary(
            sequence=item.sequence,
            classification=item.classification.value,
            summary=truncate(item.summary, loop_settings.history_summary_chars),
        )
        for item in recent
        if item.sequence < sequence
    ]

    stale_after = timedelta(days=knowledge_settings.stale_after_days)
    selected = sorted(knowledge_entries, key=lambda entry: entry.updated_at, reverse=True)
    selected = selected[: knowledge_settings.max_entries_in_context]
    knowledge = [
        KnowledgeItem(
            key=entry.key,
            content=entry.content,
            confirmations=entry.confirmations,
            updated_at=entry.updated_at,
            stale=entry.is_stale(now=now, stale_after=stale_after),
        )
        for entry in sorted(selected, key=lambda entry: entry.key)
    ]

    return IterationContext(
        task_id=task.task_id,
        sequence=sequence,
        attempt=attempt,
        prompt=task.prompt,
        working_dir=Path(task.working_dir),
        output_dir=output_dir,
        max_iterations=loop_settings.max_iterations,
        history=history,
        knowledge=knowledge,
        resume_note=resume_note,
    )


def render_context_markdown(context: IterationContext, *, result_path: Path) -> str:
    """Render the prompt document handed to the agent."""

    lines: list[str] = []
    if context.resume_note:
        lines.extend([context.resume_note, ""])
    lines.extend(
        [
            "# Goal",
            "",
            context.prompt.strip(),
            "",
            f"Iteration {context.sequence} of at most {context.max_iterations}. "
            f"Working directory: {context.working_dir}",
            "",
            "# Previous iterations of this task",
            "",
        ],
    )
    if context.history:
        for item in context.history:
            summary = item.summary or "(no summary)"
            lines.append(f"- #{item.sequence} [{item.classification}] {summary}")
    else:
        lines.append("None. This is the first iteration.")

    lines.extend(["", "# Project knowledge", ""])
    if context.knowledge:
        for entry in context.knowledge:
            markers = [f"confirmed x{entry.confirmations}"]
            if entry.stale:
                markers.append(f"stale, last updated {entry.updated_at.date().isoformat()}")
            lines.append(f"- {entry.key} ({', '.join(markers)}): {entry.content}")
    else:
        lines.append("No recorded knowledge yet.")

    lines.extend(
        [
            "",
            "# Reporting",
            "",
            "Work toward the goal, then write a JSON object to:",
            f"{result_path}",
            "",
            "Fields:",
            '- "status": one of "goal_satisfied", "progress", "no_change", "error"',
            '- "summary": what you did and what remains',
            '- "facts": list of {"key": ..., "content": ...} durable project facts '
            "(build-command, test-command, style-note, ...) worth remembering",
            '- "error": description when status is "error"; set "fatal": true if retrying cannot help',
            "",
            'Report "goal_satisfied" only when the goal is fully met.',
            "",
        ],
    )
    return "\n".join(lines)


def truncate(text: str, limit: int) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(_TRUNCATION_MARK))].rstrip() + _TRUNCATION_MARK
