"""Agent adapter: one context in, one normalized outcome out."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from codeloop.config import AgentSettings
from codeloop.reconcile.backend import (
    AgentBackend,
    AgentRunRequest,
    BackendRunError,
    CancelToken,
    CliAgentBackend,
)
from codeloop.reconcile.context import IterationContext, truncate
from codeloop.reconcile.contracts import AgentFact, AgentResultContract, read_agent_result
from codeloop.reconcile.convergence import (
    AgentReport,
    ConvergencePolicy,
    SelfReportPolicy,
)
from codeloop.reconcile.failure_classifier import (
    classify_agent_failure,
    classify_reported_error,
)
from codeloop.reconcile.models import IterationClass
from codeloop.reconcile.output_fallback import recover_result_from_stdout
from codeloop.reconcile.workdir import IterationWorkdirManager
from codeloop.reconcile.workspace import ChangeSummary, compare_snapshots, take_snapshot

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 4_000
_OUTPUT_TAIL_CHARS = 2_000


@dataclass(slots=True)
class AgentOutcome:
    """Normalized result of one agent invocation."""

    classification: IterationClass
    summary: str
    facts: list[AgentFact] = field(default_factory=list)
    change: ChangeSummary = field(default_factory=lambda: ChangeSummary(changed=False))
    exit_code: int | None = None
    duration_ms: int | None = None
    reason_code: str | None = None
    failure: dict[str, object] | None = None
    context_path: str = ""


class AgentAdapter:
    """Runs the agent CLI against a materialized iteration workdir."""

    def __init__(
        self,
        settings: AgentSettings,
        *,
        convergence: ConvergencePolicy | None = None,
        backend: AgentBackend | None = None,
        workdir_manager: IterationWorkdirManager | None = None,
    ) -> None:
        self.settings = settings
        self.convergence = convergence or SelfReportPolicy()
        self.backend = backend or CliAgentBackend()
        self.workdir_manager = workdir_manager or IterationWorkdirManager()

    def invoke(
        self,
        context: IterationContext,
        *,
        yolo: bool,
        cancel_token: CancelToken,
    ) -> AgentOutcome:
        """Run one attempt. Never raises for agent-side failures."""

        working_dir = context.working_dir
        if not working_dir.is_dir():
            return AgentOutcome(
                classification=IterationClass.ERROR_FATAL,
                summary=f"Working directory does not exist: {working_dir}",
                reason_code="invalid_working_dir",
            )
        if cancel_token.is_cancelled():
            return AgentOutcome(classification=IterationClass.CANCELLED, summary="Cancelled.")

        materialized = self.workdir_manager.materialize(context)
        manifest = materialized.manifest
        context_path = manifest.context_markdown_path
        exclude = state_exclusions(working_dir, context.output_dir)
        before = take_snapshot(working_dir, exclude=exclude)

        request = AgentRunRequest(
            manifest_path=materialized.manifest_path,
            working_dir=working_dir,
            prompt=materialized.prompt_text,
            prompt_file=Path(manifest.prompt_path),
            stdout_path=Path(manifest.output_stdout_path),
            stderr_path=Path(manifest.output_stderr_path),
            command_template=self.settings.command_template,
            model=self.settings.model,
            approval_args=self.settings.approval_args(yolo=yolo),
            timeout_seconds=self.settings.timeout_seconds,
            graceful_shutdown_seconds=self.settings.graceful_shutdown_seconds,
            cancel_token=cancel_token,
            env={
                "CODELOOP_YOLO": "1" if yolo else "0",
                "CODELOOP_MANIFEST": str(materialized.manifest_path),
                "CODELOOP_TASK_ID": context.task_id,
                "CODELOOP_ITERATION": str(context.sequence),
                "CODELOOP_ATTEMPT": str(context.attempt),
            },
        )
        logger.debug(
            "Invoking agent: task_id=%s sequence=%s attempt=%s yolo=%s",
            context.task_id,
            context.sequence,
            context.attempt,
            yolo,
        )
        try:
            run = self.backend.run(request)
        except BackendRunError as error:
            classification = (
                IterationClass.ERROR_RECOVERABLE if error.transient else IterationClass.ERROR_FATAL
            )
            return AgentOutcome(
                classification=classification,
                summary=str(error),
                reason_code="backend_start_transient" if error.transient else "backend_start_failed",
                context_path=context_path,
            )

        if run.cancelled:
            return AgentOutcome(
                classification=IterationClass.CANCELLED,
                summary="Agent process terminated on cancellation.",
                exit_code=run.exit_code,
                duration_ms=run.duration_ms,
                context_path=context_path,
            )

        change = compare_snapshots(before, take_snapshot(working_dir, exclude=exclude))
        stdout_text = _read_text(run.stdout_path)
        stderr_text = _read_text(run.stderr_path)
        outcome = AgentOutcome(
            classification=IterationClass.PROGRESS,
            summary="",
            change=change,
            exit_code=run.exit_code,
            duration_ms=run.duration_ms,
            context_path=context_path,
        )

        if run.timed_out:
            outcome.classification = IterationClass.ERROR_RECOVERABLE
            outcome.reason_code = "agent_timeout"
            outcome.summary = f"Agent timed out after {self.settings.timeout_seconds}s."
            return outcome

        if run.exit_code != 0:
            failure = classify_agent_failure(
                agent=self.settings.agent,
                exit_code=run.exit_code,
                stdout=stdout_text,
                stderr=stderr_text,
                transient_exit_codes=self.settings.transient_exit_codes,
            )
            outcome.classification = failure.classification
            outcome.reason_code = failure.reason_code
            outcome.failure = failure.to_event_details(agent=self.settings.agent)
            tail = _tail(stderr_text) or _tail(stdout_text)
            outcome.summary = f"Agent exited with code {run.exit_code}. {tail}".strip()
            return outcome

        result = self._read_result(Path(manifest.output_result_path), stdout_text)
        if result is not None and result.status == "error":
            failure = classify_reported_error(
                agent=self.settings.agent,
                message=result.error or result.summary,
                fatal=result.fatal,
            )
            outcome.classification = failure.classification
            outcome.reason_code = failure.reason_code
            outcome.failure = failure.to_event_details(agent=self.settings.agent)
        else:
            outcome.classification = self.convergence.classify(
                AgentReport(
                    result=result,
                    change=change,
                    working_dir=working_dir,
                    exclude=exclude,
                ),
            )
        if result is not None:
            outcome.facts = list(result.facts)
            outcome.summary = result.summary or (result.error or "")
        if not outcome.summary:
            outcome.summary = _tail(stdout_text) or "(agent produced no summary)"
        outcome.summary = truncate(outcome.summary, SUMMARY_MAX_CHARS)
        return outcome

    def _read_result(self, result_path: Path, stdout_text: str) -> AgentResultContract | None:
        if result_path.is_file():
            try:
                return read_agent_result(result_path)
            except (ValueError, TypeError) as error:
                logger.warning("Ignoring malformed agent result %s: %s", result_path, error)
        return recover_result_from_stdout(stdout_text)


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except OSError:
        return ""


def _tail(text: str) -> str:
    text = text.strip()
    if len(text) <= _OUTPUT_TAIL_CHARS:
        return text
    return text[-_OUTPUT_TAIL_CHARS:]


def state_exclusions(working_dir: Path, output_dir: Path) -> tuple[str, ...]:
    """Top-level working dir entry holding *output_dir*, if it lives inside the project."""

    try:
        relative = output_dir.resolve().relative_to(working_dir.resolve())
    except ValueError:
        return ()
    if not relative.parts:
        return ()
    return (relative.parts[0],)
