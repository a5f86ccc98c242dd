"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import pytest

from agent_controller.controller.executor import (
    AgentRunRequest,
    AgentRunResult,
    TokenUsageReport,
)
from agent_controller.controller.machine import ControllerStateMachine
from agent_controller.controller.models import TaskCreate, TaskView, UsageLimitConfig
from agent_controller.controller.notifications import Notifier
from agent_controller.controller.repository import (
    ControllerRepository,
    SessionRepository,
    TaskRepository,
)
from agent_controller.controller.sessions import SessionTracker
from agent_controller.storage.common import utc_now

ECHO_AGENT_COMMAND = f"{sys.executable} -m agent_controller.controller.executor.echo_agent"

ScriptedRun = AgentRunResult | Exception | Callable[[AgentRunRequest], AgentRunResult]


class FakeClock:
    """Controllable clock passed to the state machine."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeExecutor:
    """Executor double replaying scripted outcomes; succeeds quietly once the script runs out."""

    def __init__(self) -> None:
        self.script: list[ScriptedRun] = []
        self.requests: list[AgentRunRequest] = []

    def then(self, *items: ScriptedRun) -> FakeExecutor:
        self.script.extend(items)
        return self

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.requests.append(request)
        if not self.script:
            return success("Updated the handler and its unit test.")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item


class RecordingChannel:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class RecordingAlerts:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send(
        self,
        title: str,
        message: str,
        *,
        priority: str | None = None,
        tags=(),
        actions=(),
    ) -> None:
        self.sent.append(
            {
                "title": title,
                "message": message,
                "priority": priority,
                "tags": tuple(tags),
                "actions": list(actions),
            },
        )

    def action_url(self) -> str | None:
        return "https://ntfy.example/agent-response"


@dataclass(slots=True)
class Repositories:
    tasks: TaskRepository
    controller: ControllerRepository
    sessions: SessionRepository

    def add_task(self, title: str, **fields: Any) -> TaskView:
        return self.tasks.create_task(TaskCreate(title=title, **fields))


def success(
    response: str,
    *,
    input_tokens: int = 100,
    output_tokens: int = 50,
    context_window: int | None = None,
) -> AgentRunResult:
    return AgentRunResult(
        success=True,
        duration_ms=5,
        response=response,
        token_usage=TokenUsageReport(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            context_window=context_window,
        ),
        cost_usd=0.01,
    )


def failure(error: str) -> AgentRunResult:
    return AgentRunResult(success=False, duration_ms=5, error=error)


@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "controller.db"


@pytest.fixture()
def repositories(db_path) -> Iterator[Repositories]:
    tasks = TaskRepository(db_path)
    tasks.init_schema()
    controller = ControllerRepository(db_path)
    sessions = SessionRepository(db_path)
    yield Repositories(tasks=tasks, controller=controller, sessions=sessions)
    sessions.close()
    controller.close()
    tasks.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(utc_now())


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def alerts() -> RecordingAlerts:
    return RecordingAlerts()


@pytest.fixture()
def build_machine(repositories, clock, executor, channel, alerts):
    """Factory for a state machine wired to the test repositories and doubles."""

    def _build(**overrides: Any) -> ControllerStateMachine:
        notifier = Notifier(channel, alerts=alerts)
        options: dict[str, Any] = {
            "tasks": repositories.tasks,
            "repository": repositories.controller,
            "sessions": SessionTracker(repositories.sessions, notifier),
            "executor": executor,
            "notifier": notifier,
            "usage_limit_config": UsageLimitConfig(
                max_tokens_per_hour=100_000,
                max_tokens_per_day=500_000,
            ),
            "clock": clock,
        }
        options.update(overrides)
        return ControllerStateMachine(**options)

    return _build


@pytest.fixture()
def echo_agent(monkeypatch) -> str:
    """Point the configured agent command at the bundled echo agent."""

    monkeypatch.setenv("AGENT_CONTROLLER_AGENT_COMMAND", ECHO_AGENT_COMMAND)
    return ECHO_AGENT_COMMAND
