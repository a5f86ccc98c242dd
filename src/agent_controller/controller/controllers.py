"""Controllers for agent-controller CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from agent_controller.config import Settings
from agent_controller.controller.approvals import ApprovalQueue
from agent_controller.controller.budget import TokenUsageTracker
from agent_controller.controller.inbox import (
    COMMAND_APPROVE,
    COMMAND_CANCEL_SESSION,
    COMMAND_REJECT,
    COMMAND_RESET_USAGE,
    COMMAND_SWEEP_APPROVALS,
    COMMAND_UPDATE_LIMITS,
    OPERATOR_COMMANDS,
)
from agent_controller.controller.models import (
    ApprovalStatus,
    OperatorCommand,
    OperatorCommandStatus,
    TaskCreate,
    TaskPriority,
    TaskStatus,
)
from agent_controller.controller.repository import (
    ControllerRepository,
    SessionRepository,
    TaskRepository,
)
from agent_controller.controller.runtime import open_runtime
from agent_controller.controller.scheduling import next_executable_time, task_stats
from agent_controller.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

_COMMAND_POLL_SECONDS = 0.2


@dataclass(slots=True)
class ControllerRunCommand:
    """CLI input for the long-running controller process."""

    db_path: Path | None
    activate: bool
    max_seconds: float | None = None


@dataclass(slots=True)
class ControllerStatusCommand:
    """CLI input for the persisted controller snapshot."""

    db_path: Path | None
    actions: int


@dataclass(slots=True)
class OperatorSignalCommand:
    """CLI input for queueing one operator command to the running controller."""

    db_path: Path | None
    name: str
    wait_seconds: float
    payload: dict[str, Any] | None = None


@dataclass(slots=True)
class UsageLimitsCommand:
    """CLI input for budget limit changes; `None` keeps the current value."""

    db_path: Path | None
    max_tokens_per_hour: int | None
    max_tokens_per_day: int | None
    pause_threshold: float | None
    warning_threshold: float | None
    auto_resume_on_reset: bool | None
    wait_seconds: float


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for adding a task."""

    db_path: Path | None
    title: str
    description: str | None
    task_id: str | None
    priority: str
    max_retries: int
    blocked_by: tuple[str, ...]
    scheduled_at: str | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ApprovalListCommand:
    db_path: Path | None


@dataclass(slots=True)
class ApprovalDecisionCommand:
    """CLI input for approving or rejecting one request."""

    db_path: Path | None
    request_id: str
    approve: bool
    reason: str | None
    wait_seconds: float


@dataclass(slots=True)
class ApprovalRulesCommand:
    """CLI input for auto-approval rules; `None` keeps the current value."""

    db_path: Path | None
    enabled: bool | None
    allowed_action_types: tuple[str, ...]
    max_pending_time_minutes: int | None
    require_confirmation_for_git_push: bool | None


@dataclass(slots=True)
class SessionListCommand:
    db_path: Path | None
    limit: int
    active_only: bool


@dataclass(slots=True)
class SessionLogsCommand:
    db_path: Path | None
    session_id: str
    limit: int


class ControllerCliController:
    """Coordinates controller CLI command execution."""

    def run(self, command: ControllerRunCommand) -> list[str]:
        """Run the controller until SIGINT/SIGTERM or `max_seconds` elapses."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        stop = threading.Event()
        with open_runtime(settings) as runtime:
            runtime.actor.start()
            runtime.inbox.start()
            if command.activate:
                runtime.actor.activate()
            deadline = (
                time.monotonic() + command.max_seconds if command.max_seconds is not None else None
            )
            with _signal_handlers(stop):
                while not stop.wait(timeout=0.5):
                    if deadline is not None and time.monotonic() >= deadline:
                        break
            runtime.inbox.stop()
            state = runtime.actor.deactivate()
            runtime.actor.stop()

        return [
            "Controller stopped: "
            f"status={state.status.value} processed={state.processed_count} "
            f"approved={state.approved_count} rejected={state.rejected_count} "
            f"errors={state.error_count}",
        ]

    def status(self, command: ControllerStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repositories(settings) as (tasks, controller, sessions):
            state = controller.load_state()
            pending = controller.list_approval_requests(status=ApprovalStatus.PENDING)
            actions = controller.list_action_logs(limit=command.actions)
            all_tasks = tasks.list_tasks()
            active = sessions.list_active()
            queued = controller.list_pending_commands()

        stats = task_stats(all_tasks)
        lines = [
            "Tasks: "
            + " ".join(f"{status.value}={stats[status]}" for status in TaskStatus),
        ]
        next_at = next_executable_time(all_tasks, utc_now())
        if next_at is not None:
            lines.append(f"Next executable at: {next_at.isoformat()}")
        if state is None:
            lines.append("Controller: never started")
        else:
            percentages = TokenUsageTracker().percentages(state)
            config = state.usage_limit_config
            lines.extend(
                [
                    f"Controller: status={state.status.value} "
                    f"task={state.current_task_id or '-'} "
                    f"session={state.session_id or '-'}",
                    f"Action: {state.current_action or '-'}",
                    f"Counters: processed={state.processed_count} "
                    f"approved={state.approved_count} rejected={state.rejected_count} "
                    f"errors={state.error_count}",
                    f"Usage: status={state.usage_limit_status.value} "
                    f"hourly={state.token_usage.total}/{config.max_tokens_per_hour} "
                    f"({percentages['hourly']}%) "
                    f"daily={state.daily_token_usage.total}/{config.max_tokens_per_day} "
                    f"({percentages['daily']}%) "
                    f"reset_at={state.token_usage.reset_at.isoformat()}",
                ],
            )
        lines.append(f"Pending approvals: {len(pending)}")
        lines.append(f"Active sessions: {len(active)}")
        lines.append(f"Queued operator commands: {len(queued)}")
        if actions:
            lines.append("Recent actions:")
        for entry in actions:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.action_type} "
                f"result={entry.result.value} auto={'yes' if entry.auto_approved else 'no'} "
                f"{entry.description}",
            )
        return lines

    def signal(self, command: OperatorSignalCommand) -> list[str]:
        """Queue an operator command for the running controller."""

        if command.name not in OPERATOR_COMMANDS:
            raise ValueError(f"Unsupported operator command: {command.name!r}")
        settings = Settings.from_env(db_path=command.db_path)
        with _controller_repository(settings) as repository:
            queued = repository.enqueue_command(command.name, command.payload)
            resolved = _wait_for_command(repository, queued.command_id, command.wait_seconds)
        return _command_lines(resolved)

    def limits(self, command: UsageLimitsCommand) -> list[str]:
        changes: dict[str, Any] = {
            key: value
            for key, value in (
                ("max_tokens_per_hour", command.max_tokens_per_hour),
                ("max_tokens_per_day", command.max_tokens_per_day),
                ("pause_threshold", command.pause_threshold),
                ("warning_threshold", command.warning_threshold),
                ("auto_resume_on_reset", command.auto_resume_on_reset),
            )
            if value is not None
        }
        if not changes:
            settings = Settings.from_env(db_path=command.db_path)
            with _controller_repository(settings) as repository:
                state = repository.load_state()
            config = state.usage_limit_config if state is not None else settings.usage.to_config()
            return [
                "Usage limits: "
                f"max_tokens_per_hour={config.max_tokens_per_hour} "
                f"max_tokens_per_day={config.max_tokens_per_day} "
                f"pause_threshold={config.pause_threshold} "
                f"warning_threshold={config.warning_threshold} "
                f"auto_resume_on_reset={'yes' if config.auto_resume_on_reset else 'no'}",
            ]
        return self.signal(
            OperatorSignalCommand(
                db_path=command.db_path,
                name=COMMAND_UPDATE_LIMITS,
                wait_seconds=command.wait_seconds,
                payload=changes,
            ),
        )

    def reset_usage(self, *, db_path: Path | None, wait_seconds: float) -> list[str]:
        return self.signal(
            OperatorSignalCommand(
                db_path=db_path,
                name=COMMAND_RESET_USAGE,
                wait_seconds=wait_seconds,
            ),
        )

    def add_task(self, command: TaskAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            priority = TaskPriority(command.priority)
        except ValueError as error:
            raise ValueError(f"Unsupported priority: {command.priority!r}") from error
        scheduled_at = _parse_datetime(command.scheduled_at)
        with _task_repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    title=command.title,
                    description=command.description,
                    task_id=command.task_id,
                    priority=priority,
                    max_retries=command.max_retries,
                    blocked_by=command.blocked_by,
                    scheduled_at=scheduled_at,
                ),
            )
        return [f"Task added: {task.task_id} status={task.status.value}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _task_repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} priority={task.priority.value} "
                f"retries={task.retry_count}/{task.max_retries} "
                f"next_retry_at={task.next_retry_at.isoformat() if task.next_retry_at else '-'} "
                f"title={task.title}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _task_repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority.value}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Blocked by: {', '.join(task.blocked_by) or '-'}",
            f"Scheduled at: {task.scheduled_at.isoformat() if task.scheduled_at else '-'}",
            f"Next retry at: {task.next_retry_at.isoformat() if task.next_retry_at else '-'}",
            f"Error: {task.last_error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _task_repository(settings) as repository:
            repository.retry_task(command.task_id)
        return [f"Task re-queued: {command.task_id}"]

    def list_approvals(self, command: ApprovalListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _controller_repository(settings) as repository:
            pending = repository.list_approval_requests(status=ApprovalStatus.PENDING)

        lines = [f"Pending approvals: {len(pending)}"]
        for request in pending:
            lines.append(
                f"  {request.request_id} type={request.action_type.value} "
                f"task={request.task_id} expires_at={request.expires_at.isoformat()} "
                f"{request.description}",
            )
        return lines

    def decide(self, command: ApprovalDecisionCommand) -> list[str]:
        payload: dict[str, Any] = {"request_id": command.request_id}
        if not command.approve and command.reason:
            payload["reason"] = command.reason
        return self.signal(
            OperatorSignalCommand(
                db_path=command.db_path,
                name=COMMAND_APPROVE if command.approve else COMMAND_REJECT,
                wait_seconds=command.wait_seconds,
                payload=payload,
            ),
        )

    def sweep_approvals(self, *, db_path: Path | None, wait_seconds: float) -> list[str]:
        return self.signal(
            OperatorSignalCommand(
                db_path=db_path,
                name=COMMAND_SWEEP_APPROVALS,
                wait_seconds=wait_seconds,
            ),
        )

    def rules(self, command: ApprovalRulesCommand) -> list[str]:
        """Show or update auto-approval rules; read by the controller on every sweep."""

        changes: dict[str, Any] = {}
        if command.enabled is not None:
            changes["enabled"] = command.enabled
        if command.allowed_action_types:
            changes["allowed_action_types"] = command.allowed_action_types
        if command.max_pending_time_minutes is not None:
            changes["max_pending_time_minutes"] = command.max_pending_time_minutes
        if command.require_confirmation_for_git_push is not None:
            changes["require_confirmation_for_git_push"] = (
                command.require_confirmation_for_git_push
            )

        settings = Settings.from_env(db_path=command.db_path)
        with _controller_repository(settings) as repository:
            queue = ApprovalQueue(repository)
            rules = queue.update_rules(**changes) if changes else queue.get_rules()

        return [
            "Auto-approval rules: "
            f"enabled={'yes' if rules.enabled else 'no'} "
            f"allowed={','.join(item.value for item in rules.allowed_action_types) or '-'} "
            f"max_pending_time_minutes={rules.max_pending_time_minutes} "
            "require_confirmation_for_git_push="
            f"{'yes' if rules.require_confirmation_for_git_push else 'no'}",
        ]

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _session_repository(settings) as repository:
            sessions = (
                repository.list_active()
                if command.active_only
                else repository.list_history(limit=command.limit)
            )

        lines = [f"Sessions: {len(sessions)}"]
        for session in sessions:
            cost = f"{session.cost_usd:.4f}" if session.cost_usd is not None else "-"
            lines.append(
                f"  {session.session_id} status={session.status.value} "
                f"task={session.task_id} tools={session.tool_calls} "
                f"tokens={session.input_tokens}/{session.output_tokens} cost_usd={cost} "
                f"started_at={session.started_at.isoformat()}",
            )
        return lines

    def session_logs(self, command: SessionLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _session_repository(settings) as repository:
            session = repository.get_session(command.session_id)
            if session is None:
                return [f"Session not found: {command.session_id}"]
            entries = repository.list_logs(command.session_id, limit=command.limit)

        lines = [
            f"Session: {session.session_id} status={session.status.value} "
            f"task={session.task_id}",
            f"Error: {session.error or '-'}",
        ]
        for entry in entries:
            lines.append(f"  {entry.created_at.isoformat()} [{entry.entry_type}] {entry.content}")
        return lines

    def cancel_session(
        self,
        *,
        db_path: Path | None,
        session_id: str,
        wait_seconds: float,
    ) -> list[str]:
        return self.signal(
            OperatorSignalCommand(
                db_path=db_path,
                name=COMMAND_CANCEL_SESSION,
                wait_seconds=wait_seconds,
                payload={"session_id": session_id},
            ),
        )


def _command_lines(command: OperatorCommand) -> list[str]:
    if command.status == OperatorCommandStatus.PENDING:
        return [f"Queued {command.name}: {command.command_id}"]
    return [
        f"Command {command.name} {command.status.value}: {command.result or '-'}",
    ]


def _wait_for_command(
    repository: ControllerRepository,
    command_id: str,
    wait_seconds: float,
) -> OperatorCommand:
    deadline = time.monotonic() + max(0.0, wait_seconds)
    while True:
        command = repository.get_command(command_id)
        if command is None:
            raise RuntimeError(f"Operator command disappeared: {command_id}")
        if command.status != OperatorCommandStatus.PENDING or time.monotonic() >= deadline:
            return command
        time.sleep(_COMMAND_POLL_SECONDS)


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {value!r}") from error


def _parse_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return from_iso(value)
    except ValueError as error:
        raise ValueError(f"Invalid ISO timestamp: {value!r}") from error


@contextmanager
def _signal_handlers(stop: threading.Event) -> Iterator[None]:
    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, stopping controller", name)
        stop.set()

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        # Signal handlers can only be installed in main thread.
        installed = False
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


@contextmanager
def _repositories(
    settings: Settings,
) -> Iterator[tuple[TaskRepository, ControllerRepository, SessionRepository]]:
    with (
        _task_repository(settings) as tasks,
        _controller_repository(settings) as controller,
        _session_repository(settings) as sessions,
    ):
        yield tasks, controller, sessions


@contextmanager
def _task_repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _controller_repository(settings: Settings) -> Iterator[ControllerRepository]:
    repository = ControllerRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _session_repository(settings: Settings) -> Iterator[SessionRepository]:
    repository = SessionRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
