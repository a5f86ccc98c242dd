"""Agent executor implementations."""

from agent_controller.controller.executor.base import (
    AgentExecutor,
    AgentRunRequest,
    AgentRunResult,
    TokenUsageReport,
)
from agent_controller.controller.executor.cli_executor import ClaudeCliExecutor, ExecutorError

__all__ = [
    "AgentExecutor",
    "AgentRunRequest",
    "AgentRunResult",
    "ClaudeCliExecutor",
    "ExecutorError",
    "TokenUsageReport",
]
