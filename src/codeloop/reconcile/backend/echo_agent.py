"""Local demo agent for CLI backend integration tests.

Writes ``ECHO.md`` with the task goal into the working directory and reports
the goal satisfied, with one knowledge fact.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from codeloop.reconcile.contracts import (
    AgentFact,
    AgentResultContract,
    read_manifest,
    write_agent_result,
)


def main(argv: list[str] | None = None) -> int:
    """Run local deterministic demo iteration."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--manifest", required=True)
    parser.add_argument("--prompt-file", default=None)
    args = parser.parse_args(argv)

    manifest = read_manifest(Path(args.manifest))
    context = json.loads(Path(manifest.context_json_path).read_text("utf-8"))
    goal = str(context.get("prompt", "")).strip()

    target = Path(manifest.working_dir) / "ECHO.md"
    if target.exists() and target.read_text("utf-8").strip() == goal:
        summary = "ECHO.md already holds the goal."
    else:
        target.write_text(f"{goal}\n", "utf-8")
        summary = f"Wrote ECHO.md for iteration {manifest.sequence}."

    status = "goal_satisfied"
    write_agent_result(
        Path(manifest.output_result_path),
        AgentResultContract(
            status=status,
            summary=summary,
            facts=[AgentFact(key="echo-target", content="ECHO.md")],
            metadata={
                "backend": "echo_agent",
                "yolo": os.getenv("CODELOOP_YOLO", "0"),
            },
        ),
    )
    print(f"CODELOOP_STATUS: {status}")  # noqa: T201
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
