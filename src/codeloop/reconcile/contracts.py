"""File-based contracts exchanged with the agent process."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from codeloop.reconcile.storage import load_json, write_json

MANIFEST_CONTRACT_VERSION = 1

AGENT_RESULT_STATUSES = ("goal_satisfied", "progress", "no_change", "error")


@dataclass(slots=True)
class AgentFact:
    """One durable project fact reported by the agent."""

    key: str
    content: str


@dataclass(slots=True)
class AgentResultContract:
    """Completion signal the agent writes to ``agent_result.json``."""

    status: str | None
    summary: str = ""
    facts: list[AgentFact] = field(default_factory=list)
    error: str | None = None
    fatal: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IterationManifest:
    """Paths and identity of one agent invocation."""

    contract_version: int
    task_id: str
    sequence: int
    attempt: int
    working_dir: str
    iteration_dir: str
    context_markdown_path: str
    context_json_path: str
    prompt_path: str
    output_result_path: str
    output_stdout_path: str
    output_stderr_path: str


def write_manifest(path: Path, manifest: IterationManifest) -> None:
    write_json(path, asdict(manifest))


def read_manifest(path: Path) -> IterationManifest:
    """Load and validate an iteration manifest."""

    raw = load_json(path)
    required = (
        "task_id",
        "sequence",
        "attempt",
        "working_dir",
        "iteration_dir",
        "context_markdown_path",
        "context_json_path",
        "prompt_path",
        "output_result_path",
        "output_stdout_path",
        "output_stderr_path",
    )
    missing = [key for key in required if key not in raw]
    if missing:
        raise ValueError(f"Manifest missing required fields: {', '.join(missing)}")
    contract_version = raw.get("contract_version", MANIFEST_CONTRACT_VERSION)
    if not isinstance(contract_version, int) or contract_version < 1:
        raise ValueError("manifest.contract_version must be an integer >= 1")
    return IterationManifest(
        contract_version=contract_version,
        task_id=str(raw["task_id"]),
        sequence=int(raw["sequence"]),
        attempt=int(raw["attempt"]),
        working_dir=str(raw["working_dir"]),
        iteration_dir=str(raw["iteration_dir"]),
        context_markdown_path=str(raw["context_markdown_path"]),
        context_json_path=str(raw["context_json_path"]),
        prompt_path=str(raw["prompt_path"]),
        output_result_path=str(raw["output_result_path"]),
        output_stdout_path=str(raw["output_stdout_path"]),
        output_stderr_path=str(raw["output_stderr_path"]),
    )


def write_agent_result(path: Path, payload: AgentResultContract) -> None:
    write_json(path, asdict(payload))


def read_agent_result(path: Path) -> AgentResultContract:
    """Deserialize and validate the agent result contract."""

    raw = load_json(path)
    return parse_agent_result(raw)


def parse_agent_result(raw: dict[str, Any]) -> AgentResultContract:
    status = raw.get("status")
    if status is not None:
        if not isinstance(status, str):
            raise TypeError("agent_result.status must be a string")
        status = status.strip().lower()
        if status not in AGENT_RESULT_STATUSES:
            raise ValueError(
                f"agent_result.status must be one of {', '.join(AGENT_RESULT_STATUSES)}",
            )
    summary = raw.get("summary", "")
    if summary is None:
        summary = ""
    if not isinstance(summary, str):
        raise TypeError("agent_result.summary must be a string")
    error = raw.get("error")
    if error is not None and not isinstance(error, str):
        raise TypeError("agent_result.error must be a string when provided")
    metadata = raw.get("metadata", {})
    if not isinstance(metadata, dict):
        raise TypeError("agent_result.metadata must be an object")

    raw_facts = raw.get("facts", [])
    if raw_facts is None:
        raw_facts = []
    if not isinstance(raw_facts, list):
        raise TypeError("agent_result.facts must be an array")
    facts: list[AgentFact] = []
    for item in raw_facts:
        if not isinstance(item, dict):
            raise TypeError("agent_result.facts entry must be an object")
        key = item.get("key")
        content = item.get("content")
        if not isinstance(key, str) or not key.strip():
            raise ValueError("agent_result.facts.key must be a non-empty string")
        if not isinstance(content, str):
            raise TypeError("agent_result.facts.content must be a string")
        facts.append(AgentFact(key=key.strip(), content=content))

    return AgentResultContract(
        status=status,
        summary=summary.strip(),
        facts=facts,
        error=error,
        fatal=bool(raw.get("fatal", False)),
        metadata=metadata,
    )
