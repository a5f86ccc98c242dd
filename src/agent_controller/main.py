"""CLI entrypoint for agent-controller."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_controller import __version__
from agent_controller.controller.controllers import (
    ApprovalDecisionCommand,
    ApprovalListCommand,
    ApprovalRulesCommand,
    ControllerCliController,
    ControllerRunCommand,
    ControllerStatusCommand,
    OperatorSignalCommand,
    SessionListCommand,
    SessionLogsCommand,
    TaskAddCommand,
    TaskInspectCommand,
    TaskListCommand,
    UsageLimitsCommand,
)
from agent_controller.controller.inbox import (
    COMMAND_ACTIVATE,
    COMMAND_DEACTIVATE,
    COMMAND_PAUSE,
    COMMAND_RESUME,
)
from agent_controller.controller.models import ApprovalActionType, TaskPriority, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ControllerCliController()

T = TypeVar("T")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_WAIT_OPTION = click.option(
    "--wait",
    "wait_seconds",
    type=click.FloatRange(min=0),
    default=10.0,
    show_default=True,
    help="Seconds to wait for the running controller to apply the command.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-controller")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def agent_controller(log_level: str) -> None:
    """Supervisory controller for a CLI coding agent."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_controller.group()
def controller() -> None:
    """Controller lifecycle commands."""


@controller.command("run")
@_DB_PATH_OPTION
@click.option(
    "--activate/--no-activate",
    default=True,
    show_default=True,
    help="Start processing tasks immediately.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds; runs until SIGINT/SIGTERM when omitted.",
)
def controller_run(db_path: Path | None, activate: bool, max_seconds: float | None) -> None:
    """Run the controller loop in the foreground."""

    _emit(
        CONTROLLER.run,
        ControllerRunCommand(db_path=db_path, activate=activate, max_seconds=max_seconds),
    )


@controller.command("status")
@_DB_PATH_OPTION
@click.option(
    "--actions",
    type=click.IntRange(min=0, max=500),
    default=10,
    show_default=True,
    help="How many recent action log entries to print.",
)
def controller_status(db_path: Path | None, actions: int) -> None:
    """Show the persisted controller snapshot, queue and budget."""

    _emit(CONTROLLER.status, ControllerStatusCommand(db_path=db_path, actions=actions))


def _register_signal(name: str, command_name: str, help_text: str) -> None:
    @controller.command(name, help=help_text)
    @_DB_PATH_OPTION
    @_WAIT_OPTION
    def _command(db_path: Path | None, wait_seconds: float) -> None:
        _emit(
            CONTROLLER.signal,
            OperatorSignalCommand(db_path=db_path, name=command_name, wait_seconds=wait_seconds),
        )


_register_signal("start", COMMAND_ACTIVATE, "Activate a running controller.")
_register_signal("stop", COMMAND_DEACTIVATE, "Deactivate: cancel the current attempt, go idle.")
_register_signal("pause", COMMAND_PAUSE, "Pause task selection.")
_register_signal("resume", COMMAND_RESUME, "Resume a paused controller.")


@controller.command("limits")
@_DB_PATH_OPTION
@click.option("--per-hour", type=click.IntRange(min=1), default=None, help="Hourly token limit.")
@click.option("--per-day", type=click.IntRange(min=1), default=None, help="Daily token limit.")
@click.option(
    "--pause-threshold",
    type=click.FloatRange(min=0, max=1, min_open=True),
    default=None,
    help="Fraction of a limit that starts wind-down.",
)
@click.option(
    "--warning-threshold",
    type=click.FloatRange(min=0, max=1, min_open=True),
    default=None,
    help="Fraction of a limit that raises a usage warning.",
)
@click.option(
    "--auto-resume/--no-auto-resume",
    default=None,
    help="Resume automatically when the hourly window rolls over.",
)
@_WAIT_OPTION
def controller_limits(  # noqa: PLR0913
    db_path: Path | None,
    per_hour: int | None,
    per_day: int | None,
    pause_threshold: float | None,
    warning_threshold: float | None,
    auto_resume: bool | None,
    wait_seconds: float,
) -> None:
    """Show or change token budget limits."""

    _emit(
        CONTROLLER.limits,
        UsageLimitsCommand(
            db_path=db_path,
            max_tokens_per_hour=per_hour,
            max_tokens_per_day=per_day,
            pause_threshold=pause_threshold,
            warning_threshold=warning_threshold,
            auto_resume_on_reset=auto_resume,
            wait_seconds=wait_seconds,
        ),
    )


@controller.command("reset-usage")
@_DB_PATH_OPTION
@_WAIT_OPTION
def controller_reset_usage(db_path: Path | None, wait_seconds: float) -> None:
    """Zero the hourly and daily token buckets."""

    _emit_lines(
        _guard(lambda: CONTROLLER.reset_usage(db_path=db_path, wait_seconds=wait_seconds)),
    )


@agent_controller.group()
def tasks() -> None:
    """Task backlog commands."""


@tasks.command("add")
@_DB_PATH_OPTION
@click.option("--title", required=True, help="Task title.")
@click.option("--description", default=None, help="Task description sent to the agent.")
@click.option("--task-id", default=None, help="Explicit task id; generated when omitted.")
@click.option(
    "--priority",
    type=click.Choice([item.value for item in TaskPriority], case_sensitive=False),
    default=TaskPriority.MEDIUM.value,
    show_default=True,
)
@click.option("--max-retries", type=click.IntRange(min=1), default=3, show_default=True)
@click.option(
    "--blocked-by",
    "blocked_by",
    multiple=True,
    help="Task id that must be done first. Can be repeated.",
)
@click.option("--scheduled-at", default=None, help="ISO timestamp before which the task waits.")
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str | None,
    task_id: str | None,
    priority: str,
    max_retries: int,
    blocked_by: tuple[str, ...],
    scheduled_at: str | None,
) -> None:
    """Add a task to the backlog."""

    _emit(
        CONTROLLER.add_task,
        TaskAddCommand(
            db_path=db_path,
            title=title,
            description=description,
            task_id=task_id,
            priority=priority.lower(),
            max_retries=max_retries,
            blocked_by=blocked_by,
            scheduled_at=scheduled_at,
        ),
    )


@tasks.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Optional status filter.",
)
def tasks_list(db_path: Path | None, status: str | None) -> None:
    """List tasks in creation order."""

    _emit(CONTROLLER.list_tasks, TaskListCommand(db_path=db_path, status=status))


@tasks.command("show")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_show(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit(CONTROLLER.inspect_task, TaskInspectCommand(db_path=db_path, task_id=task_id))


@tasks.command("retry")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_retry(db_path: Path | None, task_id: str) -> None:
    """Manually re-queue a failed task."""

    _emit(CONTROLLER.retry_task, TaskInspectCommand(db_path=db_path, task_id=task_id))


@agent_controller.group()
def approvals() -> None:
    """Approval queue commands."""


@approvals.command("list")
@_DB_PATH_OPTION
def approvals_list(db_path: Path | None) -> None:
    """List pending approval requests."""

    _emit(CONTROLLER.list_approvals, ApprovalListCommand(db_path=db_path))


@approvals.command("approve")
@_DB_PATH_OPTION
@click.option("--request-id", required=True, help="Approval request id.")
@_WAIT_OPTION
def approvals_approve(db_path: Path | None, request_id: str, wait_seconds: float) -> None:
    """Approve a pending request; the task is marked done."""

    _emit(
        CONTROLLER.decide,
        ApprovalDecisionCommand(
            db_path=db_path,
            request_id=request_id,
            approve=True,
            reason=None,
            wait_seconds=wait_seconds,
        ),
    )


@approvals.command("reject")
@_DB_PATH_OPTION
@click.option("--request-id", required=True, help="Approval request id.")
@click.option("--reason", default=None, help="Optional rejection reason.")
@_WAIT_OPTION
def approvals_reject(
    db_path: Path | None,
    request_id: str,
    reason: str | None,
    wait_seconds: float,
) -> None:
    """Reject a pending request."""

    _emit(
        CONTROLLER.decide,
        ApprovalDecisionCommand(
            db_path=db_path,
            request_id=request_id,
            approve=False,
            reason=reason,
            wait_seconds=wait_seconds,
        ),
    )


@approvals.command("rules")
@_DB_PATH_OPTION
@click.option("--enabled/--disabled", default=None, help="Toggle auto-approval.")
@click.option(
    "--allow",
    "allowed_action_types",
    multiple=True,
    type=click.Choice([item.value for item in ApprovalActionType]),
    help="Action type eligible for auto-approval. Can be repeated; replaces the list.",
)
@click.option(
    "--max-pending-minutes",
    type=click.IntRange(min=0),
    default=None,
    help="Auto-approve after this many pending minutes; 0 disables.",
)
@click.option(
    "--confirm-git-push/--no-confirm-git-push",
    default=None,
    help="Always require a human for git_push.",
)
def approvals_rules(
    db_path: Path | None,
    enabled: bool | None,
    allowed_action_types: tuple[str, ...],
    max_pending_minutes: int | None,
    confirm_git_push: bool | None,
) -> None:
    """Show or change auto-approval rules."""

    _emit(
        CONTROLLER.rules,
        ApprovalRulesCommand(
            db_path=db_path,
            enabled=enabled,
            allowed_action_types=allowed_action_types,
            max_pending_time_minutes=max_pending_minutes,
            require_confirmation_for_git_push=confirm_git_push,
        ),
    )


@approvals.command("sweep")
@_DB_PATH_OPTION
@_WAIT_OPTION
def approvals_sweep(db_path: Path | None, wait_seconds: float) -> None:
    """Run the approval timeout sweep now."""

    _emit_lines(
        _guard(lambda: CONTROLLER.sweep_approvals(db_path=db_path, wait_seconds=wait_seconds)),
    )


@agent_controller.group()
def sessions() -> None:
    """Execution session commands."""


@sessions.command("list")
@_DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many recent sessions to print.",
)
@click.option("--active", "active_only", is_flag=True, help="Only non-terminal sessions.")
def sessions_list(db_path: Path | None, limit: int, active_only: bool) -> None:
    """List execution sessions, newest first."""

    _emit(
        CONTROLLER.list_sessions,
        SessionListCommand(db_path=db_path, limit=limit, active_only=active_only),
    )


@sessions.command("logs")
@_DB_PATH_OPTION
@click.option("--session-id", required=True, help="Session id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="How many log entries to print.",
)
def sessions_logs(db_path: Path | None, session_id: str, limit: int) -> None:
    """Print the log of one session."""

    _emit(
        CONTROLLER.session_logs,
        SessionLogsCommand(db_path=db_path, session_id=session_id, limit=limit),
    )


@sessions.command("cancel")
@_DB_PATH_OPTION
@click.option("--session-id", required=True, help="Session id.")
@_WAIT_OPTION
def sessions_cancel(db_path: Path | None, session_id: str, wait_seconds: float) -> None:
    """Cancel a running session; the task returns to todo."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.cancel_session(
                db_path=db_path,
                session_id=session_id,
                wait_seconds=wait_seconds,
            ),
        ),
    )


def _emit(handler: Callable[[T], list[str]], command: T) -> None:
    _emit_lines(_guard(lambda: handler(command)))


def _guard(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, RuntimeError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def main() -> None:
    agent_controller()


if __name__ == "__main__":  # pragma: no cover
    main()
