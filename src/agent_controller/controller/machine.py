"""Controller state machine: selection, single-flight execution and approval gating."""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any

from agent_controller.controller.approvals import ApprovalQueue, TimeoutSweep
from agent_controller.controller.budget import (
    BudgetOutcome,
    TokenUsageTracker,
    estimate_tokens,
    fresh_token_usage,
)
from agent_controller.controller.classifier import ActionClassification, ActionClassifier
from agent_controller.controller.executor.base import (
    AgentExecutor,
    AgentRunRequest,
    AgentRunResult,
)
from agent_controller.controller.executor.stream import (
    EVENT_RESULT,
    EVENT_TEXT,
    EVENT_TOOL_CALL,
    EVENT_TOOL_RESULT,
    USAGE_PARSER_VERSION,
    StreamEvent,
)
from agent_controller.controller.models import (
    ActionLogView,
    ActionLogWrite,
    ActionResult,
    ApprovalRequest,
    ApprovalStatus,
    AutoApprovalRules,
    ControllerPhase,
    ControllerState,
    ControllerStatus,
    DailyTokenUsage,
    ProgressState,
    SessionStatus,
    TaskStatus,
    TaskView,
    UsageLimitConfig,
)
from agent_controller.controller.notifications import (
    EVENT_ACTION_COMPLETED,
    EVENT_APPROVAL_REQUIRED,
    EVENT_PROGRESS_UPDATED,
    EVENT_STATE_CHANGED,
    EVENT_USAGE_WARNING,
    Notifier,
)
from agent_controller.controller.prompts import SYSTEM_PROMPT, build_task_prompt
from agent_controller.controller.repository import ControllerRepository
from agent_controller.controller.scheduling import (
    TaskStore,
    get_next_executable_task,
    schedule_retry,
    task_stats,
    update_blocked_status,
)
from agent_controller.controller.sessions import LOG_TOOL_CALL, SessionTracker
from agent_controller.storage.common import utc_now

logger = logging.getLogger(__name__)

OUTPUT_PREVIEW_CHARS = 500
RESULT_LOG_CHARS = 200
MESSAGE_NO_TASKS = "No tasks in queue"


@dataclass(slots=True)
class RunOptions:
    """Per-attempt executor limits."""

    timeout_seconds: int = 1800
    idle_timeout_seconds: int = 120
    cwd: Path | None = None


def initial_state(config: UsageLimitConfig, now: datetime) -> ControllerState:
    return ControllerState(
        status=ControllerStatus.IDLE,
        token_usage=fresh_token_usage(config, now),
        daily_token_usage=DailyTokenUsage(day=now.date()),
        usage_limit_config=config,
    )


class ControllerStateMachine:  # noqa: PLR0904
    """Owns the controller state; every method must be called from one thread."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskStore,
        repository: ControllerRepository,
        sessions: SessionTracker,
        executor: AgentExecutor,
        notifier: Notifier,
        classifier: ActionClassifier | None = None,
        approvals: ApprovalQueue | None = None,
        budget: TokenUsageTracker | None = None,
        usage_limit_config: UsageLimitConfig | None = None,
        run_options: RunOptions | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks = tasks
        self.repository = repository
        self.sessions = sessions
        self.executor = executor
        self.notifier = notifier
        self.classifier = classifier or ActionClassifier()
        self.approvals = approvals or ApprovalQueue(repository)
        self.budget = budget or TokenUsageTracker(
            history_sink=repository.record_token_history,
        )
        self.run_options = run_options or RunOptions()
        self._clock = clock
        self._default_config = usage_limit_config or UsageLimitConfig()
        self.state = initial_state(self._default_config, clock())
        self.loop_active = False
        self._kick = False
        self._in_flight = False
        self._cancel = threading.Event()
        self._cancel_lock = threading.Lock()
        self._active_session_id: str | None = None

    # lifecycle

    def initialize(self) -> ControllerState:
        """Start from `idle` with an empty approval queue; budget buckets survive restarts."""

        now = self._clock()
        previous = self.repository.load_state()
        state = initial_state(self._default_config, now)
        if previous is not None:
            state.token_usage = previous.token_usage
            state.daily_token_usage = previous.daily_token_usage
            state.usage_limit_config = previous.usage_limit_config
            state.usage_limit_status = previous.usage_limit_status
        self.state = state
        self.approvals.clear()

        for task in self.tasks.list_tasks():
            if task.status == TaskStatus.IN_PROGRESS:
                self.tasks.update_task(task.task_id, status=TaskStatus.TODO)
                logger.info("Requeued task %s left in progress by a previous run", task.task_id)
        for session in self.sessions.active():
            self.sessions.mark(session.session_id, SessionStatus.CANCELLED)

        self._commit()
        return self.get_state()

    def activate(self) -> ControllerState:
        if self.state.status != ControllerStatus.IDLE:
            return self.get_state()
        self._update(
            status=ControllerStatus.RUNNING,
            started_at=self._clock(),
            current_action="Starting up...",
        )
        self._start_loop()
        logger.info("Controller activated")
        return self.get_state()

    def deactivate(self) -> ControllerState:
        self.loop_active = False
        self.request_cancel()
        discarded = self.approvals.list_pending()
        self.approvals.clear()
        for request in discarded:
            task = self.tasks.get_task(request.task_id)
            if task is not None and task.status == TaskStatus.IN_PROGRESS:
                self.tasks.update_task(task.task_id, status=TaskStatus.TODO)
                logger.info(
                    "Requeued task %s after discarding approval %s",
                    task.task_id,
                    request.request_id,
                )
        for session in self.sessions.active():
            if session.status == SessionStatus.WAITING_INPUT:
                self.sessions.mark(session.session_id, SessionStatus.CANCELLED)
        self._update(
            status=ControllerStatus.IDLE,
            current_task_id=None,
            current_action=None,
            current_progress=None,
            session_id=None,
        )
        self.notifier.publish(EVENT_PROGRESS_UPDATED, {"progress": None})
        logger.info("Controller deactivated")
        return self.get_state()

    def pause(self) -> ControllerState:
        if self.state.status not in (ControllerStatus.RUNNING, ControllerStatus.WAITING_APPROVAL):
            return self.get_state()
        self.loop_active = False
        self._update(status=ControllerStatus.PAUSED, current_action="Paused")
        logger.info("Controller paused")
        return self.get_state()

    def resume(self) -> ControllerState:
        if self.state.status != ControllerStatus.PAUSED:
            return self.get_state()
        self._update(
            status=ControllerStatus.RUNNING,
            paused_due_to_limit=False,
            current_action="Resuming...",
        )
        self._start_loop()
        logger.info("Controller resumed")
        return self.get_state()

    def consume_kick(self) -> bool:
        """True once after the loop was (re)started and wants an immediate tick."""

        kick, self._kick = self._kick, False
        return kick

    # cancellation

    def request_cancel(self, session_id: str | None = None) -> bool:
        """Thread-safe: ask the in-flight execution to stop."""

        with self._cancel_lock:
            active = self._active_session_id
            if active is None or (session_id is not None and session_id != active):
                return False
            self._cancel.set()
            return True

    def cancel_session(self, session_id: str) -> bool:
        if self.request_cancel(session_id):
            return True
        return self.sessions.cancel(session_id)

    # tick and task processing

    def tick(self) -> TaskView | None:
        """One scheduling step; returns the task that was processed, if any."""

        if self._in_flight:
            logger.debug("Tick skipped: execution in flight")
            return None

        now = self._clock()
        if self.state.status == ControllerStatus.WINDING_DOWN:
            outcome = self.budget.check_window_reset(self.state, now=now)
            if outcome is None:
                return None
            self._commit()
        if self.state.status != ControllerStatus.RUNNING:
            return None

        update_blocked_status(self.tasks)
        tasks = self.tasks.list_tasks()
        task = get_next_executable_task(tasks, now)
        if task is None:
            stats = task_stats(tasks)
            pending = stats[TaskStatus.TODO] + stats[TaskStatus.BLOCKED]
            action = (
                f"Waiting for {pending} task(s) - blocked or scheduled"
                if pending > 0
                else MESSAGE_NO_TASKS
            )
            if self.state.current_action != action or self.state.current_task_id is not None:
                self._update(current_task_id=None, current_action=action)
            return None

        self.process_task(task)
        return task

    def process_task(self, task: TaskView) -> None:
        """Run one attempt of `task` to a terminal or approval-pending outcome."""

        if self._in_flight:
            raise RuntimeError("A task is already being processed.")
        started = time.monotonic()
        session = self.sessions.start(task, now=self._clock())
        session_id = session.session_id
        self._in_flight = True
        with self._cancel_lock:
            self._cancel.clear()
            self._active_session_id = session_id
        try:
            self.sessions.log(session_id, "info", f"Starting task: {task.title}")
            self._update(
                current_task_id=task.task_id,
                current_action=f"Processing: {task.title}",
                session_id=session_id,
            )
            self._set_progress(ControllerPhase.EXECUTING, 1, 3, "Analyzing task...")
            self.tasks.update_task(task.task_id, status=TaskStatus.IN_PROGRESS)
            self.sessions.mark(session_id, SessionStatus.RUNNING)

            prompt = build_task_prompt(task)
            self._set_progress(ControllerPhase.EXECUTING, 2, 3, "Executing with agent...")
            self.sessions.log(session_id, "info", "Sending task to agent...")
            try:
                result = self.executor.run(
                    AgentRunRequest(
                        prompt=prompt,
                        system_prompt=SYSTEM_PROMPT,
                        cwd=self.run_options.cwd,
                        timeout_seconds=self.run_options.timeout_seconds,
                        idle_timeout_seconds=self.run_options.idle_timeout_seconds,
                        cancel_requested=self._cancel.is_set,
                        on_event=partial(self._on_stream_event, session_id),
                    ),
                )
            except Exception as error:
                logger.exception("Executor raised while processing task %s", task.task_id)
                self._handle_failure(
                    task,
                    session_id,
                    str(error) or type(error).__name__,
                    _elapsed_ms(started),
                    label="error",
                )
                return

            if result.cancelled:
                self._handle_cancelled(task, session_id)
                return

            self._account_tokens(session_id, prompt, result)
            if not result.success:
                self._handle_failure(
                    task,
                    session_id,
                    result.error or "Unknown error",
                    _elapsed_ms(started),
                    label="failed",
                )
                return

            self._set_progress(ControllerPhase.REVIEWING, 3, 3, "Reviewing results...")
            response = result.response or ""
            classification = self.classifier.classify(response, task_title=task.title)
            if classification.requires_approval:
                self._request_approval(task, session_id, classification, response)
                return
            self._complete_task(
                task,
                session_id,
                classification,
                response,
                _elapsed_ms(started),
            )
        finally:
            with self._cancel_lock:
                self._active_session_id = None
                self._cancel.clear()
            self._in_flight = False
            self._clear_progress()

    def _on_stream_event(self, session_id: str, event: StreamEvent) -> None:
        if event.kind == EVENT_TOOL_CALL:
            content = f"{event.tool}: {event.text}" if event.text else str(event.tool)
            self.sessions.log(session_id, LOG_TOOL_CALL, content, {"tool": event.tool})
        elif event.kind == EVENT_TOOL_RESULT:
            self.sessions.log(
                session_id,
                "tool-result",
                event.text,
                {"is_error": event.is_error},
            )
        elif event.kind == EVENT_TEXT:
            self.sessions.log(session_id, "text", event.text)
        elif event.kind == EVENT_RESULT:
            self.sessions.log(
                session_id,
                "info",
                "Agent finished",
                {
                    "cost_usd": event.cost_usd,
                    "duration_ms": event.duration_ms,
                    "usage_parser_version": USAGE_PARSER_VERSION,
                },
            )

    def _account_tokens(self, session_id: str, prompt: str, result: AgentRunResult) -> None:
        usage = result.token_usage
        if usage is not None:
            input_tokens = usage.total_input_tokens
            output_tokens = usage.output_tokens
            context_window = usage.context_window
        else:
            input_tokens = estimate_tokens(prompt)
            output_tokens = estimate_tokens(result.response or "")
            context_window = None
        outcome = self.budget.record(
            self.state,
            input_tokens,
            output_tokens,
            context_window=context_window,
            now=self._clock(),
        )
        self.sessions.record_tokens(session_id, input_tokens, output_tokens, result.cost_usd)
        self._after_budget(outcome)

    def _after_budget(self, outcome: BudgetOutcome) -> None:
        self._commit()
        if outcome.should_warn:
            self.notifier.publish(
                EVENT_USAGE_WARNING,
                {"status": outcome.status, "percentage": outcome.percentage},
            )

    def _handle_cancelled(self, task: TaskView, session_id: str) -> None:
        self.sessions.log(session_id, "info", "Execution cancelled")
        self.sessions.mark(session_id, SessionStatus.CANCELLED)
        self.tasks.update_task(task.task_id, status=TaskStatus.TODO)
        self._log_action(
            ActionLogWrite(
                task_id=task.task_id,
                task_title=task.title,
                action_type="cancelled",
                description=f"Execution cancelled for {task.title!r}",
                auto_approved=False,
                result=ActionResult.SKIPPED,
            ),
        )
        self._update(current_task_id=None, session_id=None, current_action="Execution cancelled")

    def _handle_failure(  # noqa: PLR0913
        self,
        task: TaskView,
        session_id: str,
        error: str,
        duration_ms: int,
        *,
        label: str,
    ) -> None:
        updated = schedule_retry(self.tasks, task.task_id, error, self._clock())
        self.sessions.log(session_id, "error", f"Task {label}: {error}")
        self.sessions.mark(session_id, SessionStatus.FAILED, error=error)

        attempts = task.retry_count + 1
        permanent = updated is not None and updated.status == TaskStatus.FAILED
        description = (
            f"Task {label} after {attempts} attempts"
            if permanent
            else f"Task {label}, retry {attempts}/{task.max_retries} scheduled"
        )
        self._log_action(
            ActionLogWrite(
                task_id=task.task_id,
                task_title=task.title,
                action_type="error",
                description=description,
                auto_approved=True,
                result=ActionResult.FAILURE,
                output=error,
                duration_ms=duration_ms,
            ),
        )
        self._update(
            error_count=self.state.error_count + 1,
            current_task_id=None,
            session_id=None,
            current_action=description,
        )
        if permanent:
            self.notifier.alert(
                "Task Failed",
                f'"{task.title}" failed after {attempts} attempts: {error}',
                priority="high",
                tags=("x", "task-failed"),
            )

    def _request_approval(
        self,
        task: TaskView,
        session_id: str,
        classification: ActionClassification,
        response: str,
    ) -> None:
        request = self.approvals.create(task, classification, response, now=self._clock())
        self.notifier.publish(EVENT_APPROVAL_REQUIRED, request)
        label = request.action_type.value.replace("_", " ")
        self.notifier.alert(
            f"Approval Required: {label}",
            f"{task.title}\n\n{classification.description}",
            priority="high",
            tags=("warning", "approval"),
            actions=self.notifier.approval_actions(request.request_id),
        )
        self.sessions.log(
            session_id,
            "info",
            f"Waiting for approval: {classification.description}",
            classification.to_log_details(),
        )
        self.sessions.mark(session_id, SessionStatus.WAITING_INPUT)
        self._update(
            status=ControllerStatus.WAITING_APPROVAL,
            current_action=f"Waiting approval: {classification.description}",
        )

    def _complete_task(  # noqa: PLR0913
        self,
        task: TaskView,
        session_id: str,
        classification: ActionClassification,
        response: str,
        duration_ms: int,
    ) -> None:
        self.sessions.log(session_id, "complete", f"Task completed: {classification.description}")
        preview = response[:RESULT_LOG_CHARS] + ("..." if len(response) > RESULT_LOG_CHARS else "")
        self.sessions.log(session_id, "info", f"Result: {preview}")
        self.sessions.mark(
            session_id,
            SessionStatus.COMPLETED,
            result=response[:OUTPUT_PREVIEW_CHARS],
        )
        self._log_action(
            ActionLogWrite(
                task_id=task.task_id,
                task_title=task.title,
                action_type=classification.type,
                description=classification.description,
                auto_approved=True,
                result=ActionResult.SUCCESS,
                output=response,
                duration_ms=duration_ms,
            ),
        )
        self.tasks.update_task(task.task_id, status=TaskStatus.DONE)
        update_blocked_status(self.tasks)
        self._update(
            processed_count=self.state.processed_count + 1,
            approved_count=self.state.approved_count + 1,
            current_task_id=None,
            session_id=None,
            current_action=f"Completed: {task.title}",
        )

    # approvals

    def approve(
        self,
        request_id: str,
        *,
        auto_approved_after_minutes: int | None = None,
    ) -> ApprovalRequest | None:
        """Approve a pending request; the originating task becomes `done`."""

        request = self.approvals.resolve(request_id, ApprovalStatus.APPROVED)
        if request is None:
            return None

        auto = auto_approved_after_minutes is not None
        description = (
            f"Auto-approved after {auto_approved_after_minutes} minutes: {request.description}"
            if auto
            else f"Approved: {request.description}"
        )
        self._log_action(
            ActionLogWrite(
                task_id=request.task_id,
                task_title=request.task_title,
                action_type=request.action_type.value,
                description=description,
                auto_approved=auto,
                result=ActionResult.SUCCESS,
                output=request.details,
            ),
        )
        self.tasks.update_task(request.task_id, status=TaskStatus.DONE)
        update_blocked_status(self.tasks)
        self._finish_waiting_session(
            request.task_id,
            SessionStatus.COMPLETED,
            result=request.details[:OUTPUT_PREVIEW_CHARS],
        )
        self._update(
            approved_count=self.state.approved_count + 1,
            processed_count=self.state.processed_count + 1,
        )
        self._resume_after_approval()
        return request

    def reject(self, request_id: str, reason: str | None = None) -> ApprovalRequest | None:
        """Reject a pending request; the task keeps whatever status it had."""

        request = self.approvals.resolve(request_id, ApprovalStatus.REJECTED)
        if request is None:
            return None

        suffix = f" - {reason}" if reason else ""
        self._log_action(
            ActionLogWrite(
                task_id=request.task_id,
                task_title=request.task_title,
                action_type=request.action_type.value,
                description=f"Rejected: {request.description}{suffix}",
                auto_approved=False,
                result=ActionResult.SKIPPED,
                output=reason,
            ),
        )
        self._finish_waiting_session(
            request.task_id,
            SessionStatus.FAILED,
            error=f"Rejected{suffix}",
        )
        self._update(
            rejected_count=self.state.rejected_count + 1,
            processed_count=self.state.processed_count + 1,
        )
        self._resume_after_approval()
        return request

    def process_approval_timeouts(self) -> TimeoutSweep:
        """Expire overdue requests and auto-approve the ones the rules allow."""

        sweep = self.approvals.sweep(now=self._clock())
        for request in sweep.expired:
            self._log_action(
                ActionLogWrite(
                    task_id=request.task_id,
                    task_title=request.task_title,
                    action_type=request.action_type.value,
                    description=f"Timed out: {request.description}",
                    auto_approved=False,
                    result=ActionResult.SKIPPED,
                    output="Approval request expired",
                ),
            )
            self._finish_waiting_session(
                request.task_id,
                SessionStatus.FAILED,
                error="Approval request expired",
            )
        if (
            sweep.expired
            and self.state.status == ControllerStatus.WAITING_APPROVAL
            and not self.approvals.list_pending()
        ):
            self._resume_after_approval()

        if sweep.auto_approvable:
            minutes = self.approvals.get_rules().max_pending_time_minutes
            for request in sweep.auto_approvable:
                self.approve(request.request_id, auto_approved_after_minutes=minutes)
        return sweep

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        return self.approvals.list_pending()

    def get_auto_approval_rules(self) -> AutoApprovalRules:
        return self.approvals.get_rules()

    def update_auto_approval_rules(self, **changes: Any) -> AutoApprovalRules:
        return self.approvals.update_rules(**changes)

    def _resume_after_approval(self) -> None:
        if self.state.status != ControllerStatus.WAITING_APPROVAL:
            return
        status = (
            ControllerStatus.WINDING_DOWN
            if self.state.paused_due_to_limit
            else ControllerStatus.RUNNING
        )
        self._update(
            status=status,
            current_task_id=None,
            session_id=None,
            current_action="Continuing...",
        )
        self._start_loop()

    def _finish_waiting_session(
        self,
        task_id: str,
        status: SessionStatus,
        *,
        error: str | None = None,
        result: str | None = None,
    ) -> None:
        for session in self.sessions.active():
            if session.task_id == task_id and session.status == SessionStatus.WAITING_INPUT:
                self.sessions.mark(session.session_id, status, error=error, result=result)

    # budget

    def update_usage_limit_config(self, **changes: Any) -> UsageLimitConfig:
        config = self.budget.update_config(self.state, **changes)
        self._commit()
        return config

    def reset_token_usage(self) -> ControllerState:
        self.budget.reset(self.state, now=self._clock())
        if self.state.status == ControllerStatus.WINDING_DOWN:
            self._update(status=ControllerStatus.RUNNING, current_action="Token usage reset")
            self._start_loop()
        else:
            self._commit()
        return self.get_state()

    def usage_percentages(self) -> dict[str, int]:
        return self.budget.percentages(self.state)

    # state helpers

    def get_state(self) -> ControllerState:
        return copy.deepcopy(self.state)

    def action_logs(self, limit: int = 100) -> list[ActionLogView]:
        return self.repository.list_action_logs(limit=limit)

    def _start_loop(self) -> None:
        self.loop_active = True
        self._kick = True

    def _update(self, **changes: Any) -> None:
        for name, value in changes.items():
            setattr(self.state, name, value)
        self._commit()

    def _commit(self) -> None:
        self.repository.save_state(self.state)
        self.notifier.publish(EVENT_STATE_CHANGED, self.state)

    def _set_progress(
        self,
        phase: ControllerPhase,
        step: int,
        total_steps: int,
        description: str,
    ) -> None:
        progress = ProgressState(
            phase=phase,
            step=step,
            total_steps=total_steps,
            description=description,
            started_at=self._clock(),
        )
        self._update(current_progress=progress)
        self.notifier.publish(EVENT_PROGRESS_UPDATED, {"progress": progress})

    def _clear_progress(self) -> None:
        if self.state.current_progress is None:
            return
        self._update(current_progress=None)
        self.notifier.publish(EVENT_PROGRESS_UPDATED, {"progress": None})

    def _log_action(self, entry: ActionLogWrite) -> ActionLogView:
        if entry.output is not None:
            entry.output = entry.output[:OUTPUT_PREVIEW_CHARS]
        view = self.repository.add_action_log(entry)
        self.notifier.publish(EVENT_ACTION_COMPLETED, view)
        return view


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
