"""Workdir materialization for one agent invocation."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from codeloop.reconcile.context import IterationContext, render_context_markdown
from codeloop.reconcile.contracts import (
    MANIFEST_CONTRACT_VERSION,
    IterationManifest,
    write_manifest,
)
from codeloop.reconcile.storage import atomic_write_text, write_json


@dataclass(slots=True)
class MaterializedIteration:
    """Materialized file-based contract paths of one attempt."""

    manifest_path: Path
    manifest: IterationManifest
    prompt_text: str


class IterationWorkdirManager:
    """Creates the ``iterations/<NNNN>/`` layout the agent reads and writes."""

    def materialize(self, context: IterationContext) -> MaterializedIteration:
        base_dir = context.output_dir
        attempt_dir = base_dir / f"attempt-{context.attempt}"
        attempt_dir.mkdir(parents=True, exist_ok=True)

        context_markdown_path = base_dir / "context.md"
        context_json_path = base_dir / "context.json"
        manifest_path = base_dir / "manifest.json"
        prompt_path = attempt_dir / "prompt.txt"
        output_result_path = attempt_dir / "agent_result.json"
        output_result_path.unlink(missing_ok=True)

        prompt_text = render_context_markdown(context, result_path=output_result_path)
        atomic_write_text(context_markdown_path, prompt_text)
        atomic_write_text(prompt_path, prompt_text)
        write_json(context_json_path, context.to_payload())

        manifest = IterationManifest(
            contract_version=MANIFEST_CONTRACT_VERSION,
            task_id=context.task_id,
            sequence=context.sequence,
            attempt=context.attempt,
            working_dir=str(context.working_dir),
            iteration_dir=str(base_dir),
            context_markdown_path=str(context_markdown_path),
            context_json_path=str(context_json_path),
            prompt_path=str(prompt_path),
            output_result_path=str(output_result_path),
            output_stdout_path=str(attempt_dir / "agent_stdout.log"),
            output_stderr_path=str(attempt_dir / "agent_stderr.log"),
        )
        write_manifest(manifest_path, manifest)
        return MaterializedIteration(
            manifest_path=manifest_path,
            manifest=manifest,
            prompt_text=prompt_text,
        )
