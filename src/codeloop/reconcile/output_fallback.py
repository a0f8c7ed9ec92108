"""Best-effort result contract recovery from agent stdout."""

from __future__ import annotations

import json
import re

from codeloop.reconcile.contracts import AgentResultContract, parse_agent_result

STDOUT_PARSER_VERSION = "v2"

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_STATUS_LINE = re.compile(
    r"^\s*CODELOOP_STATUS\s*:\s*(goal_satisfied|progress|no_change|error)\b",
    re.IGNORECASE | re.MULTILINE,
)


def recover_result_from_stdout(stdout_text: str) -> AgentResultContract | None:
    """Try to recover an ``AgentResultContract`` from plain agent stdout.

    A JSON payload carrying ``status`` wins; otherwise the last
    ``CODELOOP_STATUS: <status>`` line is used with the surrounding text as
    the summary.
    """

    text = stdout_text.strip()
    if not text:
        return None

    payload = _parse_json_payload(text)
    if payload is not None and "status" in payload:
        try:
            result = parse_agent_result(payload)
        except (TypeError, ValueError):
            result = None
        if result is not None:
            result.metadata["stdout_parser"] = "json_payload"
            result.metadata["stdout_parser_version"] = STDOUT_PARSER_VERSION
            return result

    matches = list(_STATUS_LINE.finditer(text))
    if not matches:
        return None
    status = matches[-1].group(1).lower()
    summary = _normalize_plain_text(_STATUS_LINE.sub("", text))
    return AgentResultContract(
        status=status,
        summary=summary,
        error=summary if status == "error" else None,
        metadata={
            "stdout_parser": "status_line",
            "stdout_parser_version": STDOUT_PARSER_VERSION,
        },
    )


def _parse_json_payload(text: str) -> dict[str, object] | None:
    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _normalize_plain_text(text: str) -> str:
    lines = [line.rstrip() for line in text.splitlines()]
    compact = "\n".join(line for line in lines if line.strip())
    return compact.strip()
