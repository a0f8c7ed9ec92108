"""Agent backend implementations."""

from codeloop.reconcile.backend.base import (
    AgentBackend,
    AgentRunRequest,
    AgentRunResult,
    CancelToken,
)
from codeloop.reconcile.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CancelToken",
    "CliAgentBackend",
]
