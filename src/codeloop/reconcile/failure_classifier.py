"""Deterministic agent failure classification for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from codeloop.reconcile.models import IterationClass

AGENT_FAILURE_CLASSIFIER_VERSION = 3

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "please log in",
    "restricted token",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_STREAM_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "stream disconnected before completion",
    "error sending request for url",
    "connection refused",
    "connection closed",
    "connection error",
    "failed to connect",
    "exceeded retry limit",
    "too many failed attempts",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "http 429",
    "status 429",
    "error 429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "timed out",
    "overloaded",
    "http 503",
    "status 503",
    "error 503",
    "service unavailable",
)


@dataclass(slots=True)
class AgentFailureClassification:
    """Normalized failure classification result."""

    classification: IterationClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def recoverable(self) -> bool:
        return self.classification == IterationClass.ERROR_RECOVERABLE

    def to_event_details(self, *, agent: str) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": AGENT_FAILURE_CLASSIFIER_VERSION,
            "agent": agent,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_agent_failure(
    *,
    agent: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> AgentFailureClassification:
    """Classify a non-timeout agent failure into a deterministic retry class."""

    haystack = _normalize_text(stdout=stdout, stderr=stderr)

    for patterns, rule in (
        (_BILLING_OR_QUOTA_PATTERNS, "billing_or_quota"),
        (_ACCESS_OR_AUTH_PATTERNS, "access_or_auth"),
        (_MODEL_NOT_AVAILABLE_PATTERNS, "model_not_available"),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return AgentFailureClassification(
                classification=IterationClass.ERROR_FATAL,
                reason_code=f"{agent}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    for patterns, rule in (
        (_STREAM_TRANSIENT_PATTERNS, "stream_transient"),
        (_RATE_LIMIT_TRANSIENT_PATTERNS, "rate_limit_transient"),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return AgentFailureClassification(
                classification=IterationClass.ERROR_RECOVERABLE,
                reason_code=f"{agent}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return AgentFailureClassification(
            classification=IterationClass.ERROR_RECOVERABLE,
            reason_code=f"{agent}_backend_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return AgentFailureClassification(
        classification=IterationClass.ERROR_FATAL,
        reason_code=f"{agent}_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def classify_reported_error(*, agent: str, message: str, fatal: bool) -> AgentFailureClassification:
    """Classify an error the agent reported itself through the result contract."""

    if fatal:
        return AgentFailureClassification(
            classification=IterationClass.ERROR_FATAL,
            reason_code=f"{agent}_reported_fatal",
            matched_rule="reported_fatal",
            matched_pattern=None,
        )
    classified = classify_agent_failure(
        agent=agent,
        exit_code=0,
        stdout="",
        stderr=message,
        transient_exit_codes=(),
    )
    if classified.classification == IterationClass.ERROR_FATAL and classified.matched_pattern:
        return classified
    return AgentFailureClassification(
        classification=IterationClass.ERROR_RECOVERABLE,
        reason_code=f"{agent}_reported_error",
        matched_rule="reported_error",
        matched_pattern=classified.matched_pattern,
    )


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
