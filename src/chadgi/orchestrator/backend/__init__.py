"""Agent backend implementations."""

from chadgi.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from chadgi.orchestrator.backend.cli_backend import AgentProcess, BackendRunError, CliAgentBackend
from chadgi.orchestrator.backend.watchdog import TaskClock, TimeoutWatchdog

__all__ = [
    "AgentBackend",
    "AgentProcess",
    "AgentRunRequest",
    "AgentRunResult",
    "BackendRunError",
    "CliAgentBackend",
    "TaskClock",
    "TimeoutWatchdog",
]
