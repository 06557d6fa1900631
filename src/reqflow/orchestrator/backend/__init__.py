"""Agent process backends."""

from reqflow.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from reqflow.orchestrator.backend.cli_backend import AgentRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
]
