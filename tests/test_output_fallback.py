from __future__ import annotations

import allure

from codeloop.reconcile.output_fallback import recover_result_from_stdout

pytestmark = [
    allure.epic("Agent Adapter"),
    allure.feature("Result Contract"),
]


def test_recover_result_from_fenced_json() -> None:
    stdout = """
Some text before.
```json
{
  "status": "progress",
  "summary": "Added the build script",
  "facts": [{"key": "build-command", "content": "make build"}]
}
```
Some text after.
""".strip()
    recovered = recover_result_from_stdout(stdout)
    assert recovered is not None
    assert recovered.status == "progress"
    assert recovered.summary == "Added the build script"
    assert recovered.facts[0].key == "build-command"
    assert recovered.metadata["stdout_parser"] == "json_payload"


def test_recover_result_from_status_line() -> None:
    stdout = "Created LICENSE with MIT text.\nCODELOOP_STATUS: goal_satisfied\n"

    recovered = recover_result_from_stdout(stdout)

    assert recovered is not None
    assert recovered.status == "goal_satisfied"
    assert recovered.summary == "Created LICENSE with MIT text."
    assert recovered.metadata["stdout_parser"] == "status_line"


def test_last_status_line_wins() -> None:
    stdout = "CODELOOP_STATUS: progress\nlooked again\nCODELOOP_STATUS: no_change\n"

    recovered = recover_result_from_stdout(stdout)

    assert recovered is not None
    assert recovered.status == "no_change"


def test_error_status_line_keeps_text_as_error() -> None:
    recovered = recover_result_from_stdout("npm install failed\nCODELOOP_STATUS: error")
    assert recovered is not None
    assert recovered.status == "error"
    assert recovered.error == "npm install failed"


def test_plain_text_without_signal_is_not_recovered() -> None:
    assert recover_result_from_stdout("I changed some files.") is None
    assert recover_result_from_stdout("   ") is None


def test_json_with_unknown_status_falls_through() -> None:
    assert recover_result_from_stdout('{"status": "done"}') is None
