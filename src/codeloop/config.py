"""Runtime configuration for the reconciliation loop and agent invocation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

STATE_DIR_NAME = ".codeloop"
SUPPORTED_AGENTS = ("codex", "claude", "gemini", "custom")
SUPPORTED_CONVERGENCE = ("self_report", "clean_tree")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

DEFAULT_COMMAND_TEMPLATES = {
    "codex": "codex exec --skip-git-repo-check {approval_args} {prompt}",
    "claude": "claude -p {approval_args} -- {prompt}",
    "gemini": "gemini {approval_args} --prompt {prompt}",
}
DEFAULT_YOLO_ARGS = {
    "codex": "--dangerously-bypass-approvals-and-sandbox",
    "claude": "--dangerously-skip-permissions",
    "gemini": "--yolo",
    "custom": "",
}
DEFAULT_SAFE_ARGS = {
    "codex": "--sandbox workspace-write",
    "claude": "--permission-mode acceptEdits",
    "gemini": "--approval-mode auto_edit",
    "custom": "",
}


@dataclass(slots=True)
class LoopSettings:
    """Bounds and heuristics of the reconciliation loop."""

    max_iterations: int = 20
    max_retries: int = 3
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 60.0
    stall_confirmations: int = 1
    history_limit: int = 5
    history_summary_chars: int = 600
    convergence: str = "self_report"


@dataclass(slots=True)
class AgentSettings:
    """External agent CLI invocation settings."""

    agent: str = "codex"
    command_template: str = DEFAULT_COMMAND_TEMPLATES["codex"]
    model: str = ""
    yolo_args: str = DEFAULT_YOLO_ARGS["codex"]
    safe_args: str = DEFAULT_SAFE_ARGS["codex"]
    timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 10
    transient_exit_codes: tuple[int, ...] = (137, 143)

    def approval_args(self, *, yolo: bool) -> str:
        """Return the raw CLI arguments that select the approval mode."""

        return self.yolo_args if yolo else self.safe_args


@dataclass(slots=True)
class KnowledgeSettings:
    """Knowledge base rendering settings."""

    stale_after_days: int = 30
    max_entries_in_context: int = 50
    content_max_chars: int = 2_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    working_dir: Path = Path(".")
    state_dir: Path | None = None
    yolo: bool = False
    log_level: str = "WARNING"
    loop: LoopSettings = field(default_factory=LoopSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    knowledge: KnowledgeSettings = field(default_factory=KnowledgeSettings)

    @property
    def resolved_state_dir(self) -> Path:
        """State directory, defaulting to ``<working_dir>/.codeloop``."""

        if self.state_dir is not None:
            return self.state_dir
        return self.working_dir / STATE_DIR_NAME

    @classmethod
    def from_env(
        cls,
        *,
        working_dir: Path | None = None,
        state_dir: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        agent = os.getenv("CODELOOP_AGENT", "codex").strip().lower()
        state_dir_env = os.getenv("CODELOOP_STATE_DIR", "").strip()
        return cls(
            working_dir=(working_dir or Path(os.getenv("CODELOOP_WORKING_DIR", "."))).resolve(),
            state_dir=state_dir or (Path(state_dir_env) if state_dir_env else None),
            yolo=_env_bool("CODELOOP_YOLO", default=False),
            log_level=os.getenv("CODELOOP_LOG_LEVEL", "WARNING").strip().upper(),
            loop=LoopSettings(
                max_iterations=int(os.getenv("CODELOOP_MAX_ITERATIONS", "20")),
                max_retries=int(os.getenv("CODELOOP_MAX_RETRIES", "3")),
                retry_base_seconds=float(os.getenv("CODELOOP_RETRY_BASE_SECONDS", "2.0")),
                retry_max_seconds=float(os.getenv("CODELOOP_RETRY_MAX_SECONDS", "60.0")),
                stall_confirmations=int(os.getenv("CODELOOP_STALL_CONFIRMATIONS", "1")),
                history_limit=int(os.getenv("CODELOOP_HISTORY_LIMIT", "5")),
                history_summary_chars=int(os.getenv("CODELOOP_HISTORY_SUMMARY_CHARS", "600")),
                convergence=os.getenv("CODELOOP_CONVERGENCE", "self_report").strip().lower(),
            ),
            agent=AgentSettings(
                agent=agent,
                command_template=os.getenv(
                    "CODELOOP_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATES.get(agent, ""),
                ),
                model=os.getenv("CODELOOP_AGENT_MODEL", "").strip(),
                yolo_args=os.getenv("CODELOOP_AGENT_YOLO_ARGS", DEFAULT_YOLO_ARGS.get(agent, "")),
                safe_args=os.getenv("CODELOOP_AGENT_SAFE_ARGS", DEFAULT_SAFE_ARGS.get(agent, "")),
                timeout_seconds=int(os.getenv("CODELOOP_AGENT_TIMEOUT_SECONDS", "1800")),
                graceful_shutdown_seconds=int(
                    os.getenv("CODELOOP_AGENT_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                transient_exit_codes=_env_int_tuple(
                    "CODELOOP_AGENT_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
            ),
            knowledge=KnowledgeSettings(
                stale_after_days=int(os.getenv("CODELOOP_KNOWLEDGE_STALE_AFTER_DAYS", "30")),
                max_entries_in_context=int(
                    os.getenv("CODELOOP_KNOWLEDGE_MAX_ENTRIES_IN_CONTEXT", "50"),
                ),
                content_max_chars=int(os.getenv("CODELOOP_KNOWLEDGE_CONTENT_MAX_CHARS", "2000")),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error if loop bounds or agent settings are invalid."""

        if self.loop.max_iterations < 1:
            raise ValueError("CODELOOP_MAX_ITERATIONS must be >= 1.")
        if self.loop.max_retries < 0:
            raise ValueError("CODELOOP_MAX_RETRIES must be >= 0.")
        if self.loop.retry_base_seconds < 0 or self.loop.retry_max_seconds < 0:
            raise ValueError("CODELOOP_RETRY_BASE_SECONDS and CODELOOP_RETRY_MAX_SECONDS must be >= 0.")
        if self.loop.stall_confirmations < 0:
            raise ValueError("CODELOOP_STALL_CONFIRMATIONS must be >= 0.")
        if self.loop.history_limit < 0:
            raise ValueError("CODELOOP_HISTORY_LIMIT must be >= 0.")
        if self.loop.history_summary_chars <= 0:
            raise ValueError("CODELOOP_HISTORY_SUMMARY_CHARS must be > 0.")
        if self.loop.convergence not in SUPPORTED_CONVERGENCE:
            raise ValueError(
                f"Unsupported CODELOOP_CONVERGENCE={self.loop.convergence!r}. "
                f"Expected one of: {', '.join(SUPPORTED_CONVERGENCE)}.",
            )
        if self.agent.agent not in SUPPORTED_AGENTS:
            raise ValueError(
                f"Unsupported CODELOOP_AGENT={self.agent.agent!r}. "
                f"Expected one of: {', '.join(SUPPORTED_AGENTS)}.",
            )
        if not self.agent.command_template.strip():
            raise ValueError(
                "Agent command template is empty. Set CODELOOP_AGENT_COMMAND_TEMPLATE.",
            )
        if "{prompt}" not in self.agent.command_template and (
            "{prompt_file}" not in self.agent.command_template
        ):
            raise ValueError(
                "CODELOOP_AGENT_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        if self.agent.timeout_seconds <= 0:
            raise ValueError("CODELOOP_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.graceful_shutdown_seconds < 0:
            raise ValueError("CODELOOP_AGENT_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.knowledge.stale_after_days < 0:
            raise ValueError("CODELOOP_KNOWLEDGE_STALE_AFTER_DAYS must be >= 0.")
        if self.knowledge.max_entries_in_context < 0:
            raise ValueError("CODELOOP_KNOWLEDGE_MAX_ENTRIES_IN_CONTEXT must be >= 0.")
        if self.knowledge.content_max_chars <= 0:
            raise ValueError("CODELOOP_KNOWLEDGE_CONTENT_MAX_CHARS must be > 0.")
        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(
                f"Unsupported CODELOOP_LOG_LEVEL={self.log_level!r}. "
                f"Expected one of: {', '.join(SUPPORTED_LOG_LEVELS)}.",
            )


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid integer in {name}: {token!r}") from error
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
