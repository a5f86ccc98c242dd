"""Executor interface for agent task attempts."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from agent_controller.controller.executor.stream import StreamEvent


@dataclass(slots=True)
class TokenUsageReport:
    """Token usage as reported by the agent for one run."""

    input_tokens: int
    output_tokens: int
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    context_window: int | None = None

    @property
    def total_input_tokens(self) -> int:
        """Input tokens including cache reads and writes."""

        return self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one task attempt."""

    prompt: str
    system_prompt: str | None = None
    cwd: Path | None = None
    timeout_seconds: int = 1800
    idle_timeout_seconds: int = 120
    cancel_requested: Callable[[], bool] | None = None
    on_event: Callable[[StreamEvent], None] | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from the agent runner."""

    success: bool
    duration_ms: int
    response: str | None = None
    error: str | None = None
    token_usage: TokenUsageReport | None = None
    cost_usd: float | None = None
    cancelled: bool = False
    timed_out: bool = False


class AgentExecutor(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run a task attempt and return its outcome."""
