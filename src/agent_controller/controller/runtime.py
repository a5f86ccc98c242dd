"""Wiring of repositories, executor, notifier, state machine and actor."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from agent_controller.config import Settings
from agent_controller.controller.actor import ControllerActor
from agent_controller.controller.executor import AgentExecutor, ClaudeCliExecutor
from agent_controller.controller.inbox import CommandInbox
from agent_controller.controller.machine import ControllerStateMachine, RunOptions
from agent_controller.controller.notifications import (
    AlertService,
    EventBus,
    Notifier,
    NtfyAlertService,
    NtfyConfig,
)
from agent_controller.controller.repository import (
    ControllerRepository,
    SessionRepository,
    TaskRepository,
)
from agent_controller.controller.sessions import SessionTracker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ControllerRuntime:
    tasks: TaskRepository
    controller: ControllerRepository
    sessions: SessionRepository
    bus: EventBus
    machine: ControllerStateMachine
    actor: ControllerActor
    inbox: CommandInbox


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    executor: AgentExecutor | None = None,
    alerts: AlertService | None = None,
) -> Iterator[ControllerRuntime]:
    """Build a runtime for `settings`; the actor and inbox are not started."""

    busy_timeout = settings.sqlite_busy_timeout_ms
    tasks = TaskRepository(settings.db_path, sqlite_busy_timeout_ms=busy_timeout)
    tasks.init_schema()
    controller = ControllerRepository(settings.db_path, sqlite_busy_timeout_ms=busy_timeout)
    sessions = SessionRepository(settings.db_path, sqlite_busy_timeout_ms=busy_timeout)

    ntfy: NtfyAlertService | None = None
    if alerts is None and settings.ntfy.enabled:
        ntfy = NtfyAlertService(
            NtfyConfig(
                server_url=settings.ntfy.server_url,
                topic=settings.ntfy.topic or "",
                response_topic=settings.ntfy.response_topic,
                auth_token=settings.ntfy.auth_token,
                timeout_seconds=settings.ntfy.timeout_seconds,
            ),
        )
        alerts = ntfy
        logger.info("ntfy alerts enabled for topic %s", settings.ntfy.topic)

    bus = EventBus()
    notifier = Notifier(bus, alerts=alerts)
    machine = ControllerStateMachine(
        tasks=tasks,
        repository=controller,
        sessions=SessionTracker(sessions, notifier),
        executor=executor
        or ClaudeCliExecutor(command=settings.agent.command, model=settings.agent.model),
        notifier=notifier,
        usage_limit_config=settings.usage.to_config(),
        run_options=RunOptions(
            timeout_seconds=settings.agent.timeout_seconds,
            idle_timeout_seconds=settings.agent.idle_timeout_seconds,
            cwd=settings.agent.cwd,
        ),
    )
    actor = ControllerActor(
        machine,
        tick_interval_seconds=settings.loop.tick_interval_seconds,
        approval_sweep_interval_seconds=settings.loop.approval_sweep_interval_seconds,
    )
    runtime = ControllerRuntime(
        tasks=tasks,
        controller=controller,
        sessions=sessions,
        bus=bus,
        machine=machine,
        actor=actor,
        inbox=CommandInbox(controller, actor),
    )
    try:
        yield runtime
    finally:
        runtime.inbox.stop()
        runtime.actor.stop()
        if ntfy is not None:
            ntfy.close()
        sessions.close()
        controller.close()
        tasks.close()
