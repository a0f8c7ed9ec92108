"""Pluggable convergence predicates mapping agent reports to iteration classes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from codeloop.reconcile.contracts import AgentResultContract
from codeloop.reconcile.models import IterationClass
from codeloop.reconcile.workspace import ChangeSummary, is_clean_tree

logger = logging.getLogger(__name__)

_STATUS_CLASSES = {
    "goal_satisfied": IterationClass.GOAL_SATISFIED,
    "progress": IterationClass.PROGRESS,
    "no_change": IterationClass.NO_CHANGE,
}


@dataclass(slots=True)
class AgentReport:
    """Completed (exit 0) invocation, as seen by a convergence policy."""

    result: AgentResultContract | None
    change: ChangeSummary
    working_dir: Path
    exclude: tuple[str, ...] = ()


class ConvergencePolicy(Protocol):
    """Decide the classification of a completed invocation."""

    name: str

    def classify(self, report: AgentReport) -> IterationClass:
        """Return one of the recorded iteration classes (never ``CANCELLED``)."""


class SelfReportPolicy:
    """Trust the agent's completion signal, checked against the workspace diff."""

    name = "self_report"

    def classify(self, report: AgentReport) -> IterationClass:
        result = report.result
        changed = report.change.changed
        if result is None or result.status is None:
            return IterationClass.PROGRESS if changed else IterationClass.NO_CHANGE
        if result.status == "error":
            return IterationClass.ERROR_FATAL if result.fatal else IterationClass.ERROR_RECOVERABLE
        classification = _STATUS_CLASSES[result.status]
        if classification == IterationClass.NO_CHANGE and changed:
            # The workspace diff outranks a "nothing happened" claim.
            return IterationClass.PROGRESS
        return classification


class CleanTreePolicy(SelfReportPolicy):
    """Goal is satisfied only when the agent says so and git shows no outstanding diff."""

    name = "clean_tree"

    def classify(self, report: AgentReport) -> IterationClass:
        classification = super().classify(report)
        if classification != IterationClass.GOAL_SATISFIED:
            return classification
        clean = is_clean_tree(report.working_dir, exclude=report.exclude)
        if clean is False:
            logger.info("Goal reported satisfied but working tree is dirty; continuing.")
            return IterationClass.PROGRESS
        return classification


_POLICIES: dict[str, type[SelfReportPolicy]] = {
    SelfReportPolicy.name: SelfReportPolicy,
    CleanTreePolicy.name: CleanTreePolicy,
}


def resolve_convergence_policy(name: str) -> ConvergencePolicy:
    try:
        return _POLICIES[name]()
    except KeyError as error:
        raise ValueError(
            f"Unknown convergence policy {name!r}. Expected one of: {', '.join(_POLICIES)}.",
        ) from error
