"""SQLite persistence for tasks, controller state and execution sessions."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import date, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_controller.controller.models import (
    ActionLogView,
    ActionLogWrite,
    ActionResult,
    ApprovalActionType,
    ApprovalRequest,
    ApprovalStatus,
    AutoApprovalRules,
    ControllerPhase,
    ControllerState,
    ControllerStatus,
    DailyTokenUsage,
    ExecutionSession,
    OperatorCommand,
    OperatorCommandStatus,
    ProgressState,
    SessionLogEntry,
    SessionStatus,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskPriority,
    TaskStatus,
    TaskView,
    TokenHistoryEntry,
    TokenUsage,
    UsageLimitConfig,
    UsageLimitStatus,
)
from agent_controller.storage.alembic_runner import upgrade_head
from agent_controller.storage.common import (
    build_sqlite_engine,
    from_iso,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_controller.storage.sqlmodel_models import (
    CONTROLLER_STATE_ROW_ID,
    ActionLogRow,
    ApprovalRequestRow,
    ControllerSettingRow,
    ControllerStateRow,
    ExecutionSessionRow,
    OperatorCommandRow,
    SessionLogRow,
    TaskEventRow,
    TaskRow,
    TokenHistoryRow,
)

AUTO_APPROVAL_RULES_KEY = "auto_approval_rules"

_TASK_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "status",
        "priority",
        "retry_count",
        "max_retries",
        "last_error",
        "last_attempt_at",
        "next_retry_at",
        "blocked_by",
        "scheduled_at",
    },
)
_SESSION_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "ended_at",
        "last_activity_at",
        "tool_calls",
        "input_tokens",
        "output_tokens",
        "cost_usd",
        "error",
        "result",
    },
)


class _SqliteRepository:
    """Shared engine lifecycle for repositories over one SQLite file."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)


class TaskRepository(_SqliteRepository):
    """Task store facade backed by SQLModel + SQLite."""

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Insert a new `todo` task."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = TaskRow(
                task_id=task_id,
                title=payload.title,
                description=payload.description,
                status=TaskStatus.TODO.value,
                priority=TaskPriority(payload.priority).value,
                retry_count=0,
                max_retries=payload.max_retries,
                blocked_by_json=_dump_blocked_by(payload.blocked_by),
                scheduled_at=(
                    to_db_datetime(payload.scheduled_at)
                    if payload.scheduled_at is not None
                    else None
                ),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.TODO,
                details={
                    "priority": row.priority,
                    "max_retries": payload.max_retries,
                    "blocked_by": list(payload.blocked_by),
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[TaskView]:
        """List tasks in creation order, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRow).order_by(
                col(TaskRow.created_at).asc(),
                col(TaskRow.task_id).asc(),
            )
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def update_task(self, task_id: str, **changes: Any) -> TaskView | None:
        """Apply field changes; returns None for unknown task ids."""

        unknown = set(changes) - _TASK_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {', '.join(sorted(unknown))}")

        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                return None

            previous = TaskStatus(row.status)
            for name, value in changes.items():
                _apply_task_change(row, name, value)
            row.updated_at = utc_now()
            session.add(row)

            current = TaskStatus(row.status)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="status_changed" if current != previous else "updated",
                status_from=previous,
                status_to=current,
                details=_event_details(changes),
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def retry_task(self, task_id: str) -> TaskView:
        """Manual operator retry for failed tasks."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Task not found: {task_id}")
            if row.status != TaskStatus.FAILED.value:
                raise RuntimeError(
                    f"Only failed tasks can be retried manually, got {row.status}.",
                )

            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.status) == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.TODO.value,
                    retry_count=0,
                    next_retry_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while retrying; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="manual_retry",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.TODO,
                details={},
            )
            session.commit()

        task = self.get_task(task_id)
        if task is None:  # pragma: no cover - row was just updated
            raise RuntimeError(f"Task not found: {task_id}")
        return task

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.task_id == task_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()
            task = _to_task_view(row)

        events = [
            TaskEventView(
                event_id=event.id or 0,
                task_id=event.task_id,
                event_type=event.event_type,
                status_from=TaskStatus(event.status_from) if event.status_from else None,
                status_to=TaskStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=_load_json_dict(event.details_json),
            )
            for event in event_rows
        ]
        return TaskDetails(task=task, events=events)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


class ControllerRepository(_SqliteRepository):
    """Controller snapshot, live approval queue, action log, rules and token history."""

    def load_state(self) -> ControllerState | None:
        with Session(self.engine) as session:
            row = session.get(ControllerStateRow, CONTROLLER_STATE_ROW_ID)
            if row is None:
                return None
            return state_from_payload(json.loads(row.state_json))

    def save_state(self, state: ControllerState) -> None:
        payload = json.dumps(state_to_payload(state), ensure_ascii=False, sort_keys=True)
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(ControllerStateRow, CONTROLLER_STATE_ROW_ID)
            if row is None:
                row = ControllerStateRow(
                    id=CONTROLLER_STATE_ROW_ID,
                    state_json=payload,
                    updated_at=now,
                )
            else:
                row.state_json = payload
                row.updated_at = now
            session.add(row)
            session.commit()

    def add_approval_request(self, request: ApprovalRequest) -> None:
        with Session(self.engine) as session:
            session.add(
                ApprovalRequestRow(
                    request_id=request.request_id,
                    task_id=request.task_id,
                    task_title=request.task_title,
                    action_type=request.action_type.value,
                    description=request.description,
                    details=request.details,
                    status=request.status.value,
                    created_at=to_db_datetime(request.created_at),
                    expires_at=to_db_datetime(request.expires_at),
                ),
            )
            session.commit()

    def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        with Session(self.engine) as session:
            row = session.get(ApprovalRequestRow, request_id)
            return _to_approval_request(row) if row is not None else None

    def update_approval_status(
        self,
        request_id: str,
        status: ApprovalStatus,
    ) -> ApprovalRequest | None:
        """Set status of a live request; returns None when it is not in the queue."""

        with Session(self.engine) as session:
            row = session.get(ApprovalRequestRow, request_id)
            if row is None:
                return None
            row.status = status.value
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_approval_request(row)

    def remove_approval_request(self, request_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_delete(ApprovalRequestRow).where(
                    col(ApprovalRequestRow.request_id) == request_id,
                ),
            )
            session.commit()

    def list_approval_requests(
        self,
        *,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRequest]:
        with Session(self.engine) as session:
            statement = select(ApprovalRequestRow).order_by(
                col(ApprovalRequestRow.created_at).asc(),
            )
            if status is not None:
                statement = statement.where(ApprovalRequestRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_approval_request(row) for row in rows]

    def clear_approval_queue(self) -> int:
        with Session(self.engine) as session:
            result = session.exec(sa_delete(ApprovalRequestRow))
            session.commit()
            return int(result.rowcount or 0)

    def add_action_log(self, entry: ActionLogWrite) -> ActionLogView:
        with Session(self.engine) as session:
            row = ActionLogRow(
                log_id=str(uuid4()),
                task_id=entry.task_id,
                task_title=entry.task_title,
                action_type=entry.action_type,
                description=entry.description,
                auto_approved=entry.auto_approved,
                result=entry.result.value,
                output=entry.output,
                duration_ms=entry.duration_ms,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_action_log(row)

    def list_action_logs(self, *, limit: int = 100) -> list[ActionLogView]:
        """Most recent action log entries first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ActionLogRow).order_by(col(ActionLogRow.created_at).desc()).limit(limit),
            ).all()
        return [_to_action_log(row) for row in rows]

    def get_auto_approval_rules(self) -> AutoApprovalRules:
        with Session(self.engine) as session:
            row = session.get(ControllerSettingRow, AUTO_APPROVAL_RULES_KEY)
            if row is None:
                return AutoApprovalRules()
            raw = _load_json_dict(row.value_json)
        defaults = AutoApprovalRules()
        return AutoApprovalRules(
            enabled=bool(raw.get("enabled", defaults.enabled)),
            allowed_action_types=tuple(
                ApprovalActionType(value)
                for value in raw.get(
                    "allowed_action_types",
                    [item.value for item in defaults.allowed_action_types],
                )
            ),
            max_pending_time_minutes=int(
                raw.get("max_pending_time_minutes", defaults.max_pending_time_minutes),
            ),
            require_confirmation_for_git_push=bool(
                raw.get(
                    "require_confirmation_for_git_push",
                    defaults.require_confirmation_for_git_push,
                ),
            ),
        )

    def save_auto_approval_rules(self, rules: AutoApprovalRules) -> None:
        payload = json.dumps(
            {
                "enabled": rules.enabled,
                "allowed_action_types": [item.value for item in rules.allowed_action_types],
                "max_pending_time_minutes": rules.max_pending_time_minutes,
                "require_confirmation_for_git_push": rules.require_confirmation_for_git_push,
            },
            sort_keys=True,
        )
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(ControllerSettingRow, AUTO_APPROVAL_RULES_KEY)
            if row is None:
                row = ControllerSettingRow(
                    key=AUTO_APPROVAL_RULES_KEY,
                    value_json=payload,
                    updated_at=now,
                )
            else:
                row.value_json = payload
                row.updated_at = now
            session.add(row)
            session.commit()

    def record_token_history(self, entry: TokenHistoryEntry) -> None:
        with Session(self.engine) as session:
            session.add(
                TokenHistoryRow(
                    hour_start=to_db_datetime(entry.hour_start),
                    input_tokens=entry.input_tokens,
                    output_tokens=entry.output_tokens,
                    recorded_at=utc_now(),
                ),
            )
            session.commit()

    def list_token_history(self, *, since: datetime | None = None) -> list[TokenHistoryEntry]:
        with Session(self.engine) as session:
            statement = select(TokenHistoryRow).order_by(col(TokenHistoryRow.hour_start).asc())
            if since is not None:
                statement = statement.where(TokenHistoryRow.hour_start >= to_db_datetime(since))
            rows = session.exec(statement).all()
        return [
            TokenHistoryEntry(
                hour_start=to_utc_aware_datetime(row.hour_start),
                input_tokens=row.input_tokens,
                output_tokens=row.output_tokens,
            )
            for row in rows
        ]

    def enqueue_command(self, name: str, payload: dict[str, Any] | None = None) -> OperatorCommand:
        with Session(self.engine) as session:
            row = OperatorCommandRow(
                command_id=str(uuid4()),
                name=name,
                payload_json=json.dumps(payload or {}, sort_keys=True),
                status=OperatorCommandStatus.PENDING.value,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_operator_command(row)

    def list_pending_commands(self) -> list[OperatorCommand]:
        """Pending operator commands in submission order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(OperatorCommandRow)
                .where(OperatorCommandRow.status == OperatorCommandStatus.PENDING.value)
                .order_by(col(OperatorCommandRow.created_at).asc()),
            ).all()
        return [_to_operator_command(row) for row in rows]

    def complete_command(
        self,
        command_id: str,
        *,
        status: OperatorCommandStatus,
        result: str | None = None,
    ) -> bool:
        """Resolve a pending command; False when it was already resolved."""

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(OperatorCommandRow)
                .where(
                    col(OperatorCommandRow.command_id) == command_id,
                    col(OperatorCommandRow.status) == OperatorCommandStatus.PENDING.value,
                )
                .values(status=status.value, result=result, processed_at=utc_now()),
            )
            session.commit()
            return bool(outcome.rowcount)

    def get_command(self, command_id: str) -> OperatorCommand | None:
        with Session(self.engine) as session:
            row = session.get(OperatorCommandRow, command_id)
            return _to_operator_command(row) if row is not None else None


class SessionRepository(_SqliteRepository):
    """Execution sessions and their step-by-step log."""

    def create_session(self, *, session_id: str, task_id: str, task_title: str) -> ExecutionSession:
        now = utc_now()
        with Session(self.engine) as session:
            row = ExecutionSessionRow(
                session_id=session_id,
                task_id=task_id,
                task_title=task_title,
                status=SessionStatus.STARTING.value,
                started_at=now,
                last_activity_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session(row)

    def get_session(self, session_id: str) -> ExecutionSession | None:
        with Session(self.engine) as session:
            row = session.get(ExecutionSessionRow, session_id)
            return _to_session(row) if row is not None else None

    def update_session(self, session_id: str, **changes: Any) -> ExecutionSession | None:
        unknown = set(changes) - _SESSION_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported session fields: {', '.join(sorted(unknown))}")

        with Session(self.engine) as session:
            row = session.get(ExecutionSessionRow, session_id)
            if row is None:
                return None
            for name, value in changes.items():
                if isinstance(value, SessionStatus):
                    value = value.value
                elif isinstance(value, datetime):
                    value = to_db_datetime(value)
                setattr(row, name, value)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session(row)

    def add_log(
        self,
        session_id: str,
        entry_type: str,
        content: str,
        details: dict[str, Any] | None = None,
    ) -> SessionLogEntry:
        with Session(self.engine) as session:
            row = SessionLogRow(
                session_id=session_id,
                entry_type=entry_type,
                content=content,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_log_entry(row)

    def list_logs(self, session_id: str, *, limit: int = 50) -> list[SessionLogEntry]:
        """Latest `limit` entries in chronological order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(SessionLogRow)
                .where(SessionLogRow.session_id == session_id)
                .order_by(col(SessionLogRow.id).desc())
                .limit(limit),
            ).all()
        return [_to_log_entry(row) for row in reversed(rows)]

    def list_active(self) -> list[ExecutionSession]:
        active = (
            SessionStatus.STARTING.value,
            SessionStatus.RUNNING.value,
            SessionStatus.WAITING_INPUT.value,
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionSessionRow)
                .where(col(ExecutionSessionRow.status).in_(active))
                .order_by(col(ExecutionSessionRow.started_at).desc()),
            ).all()
        return [_to_session(row) for row in rows]

    def list_history(self, *, limit: int = 20) -> list[ExecutionSession]:
        finished = (
            SessionStatus.COMPLETED.value,
            SessionStatus.FAILED.value,
            SessionStatus.CANCELLED.value,
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionSessionRow)
                .where(col(ExecutionSessionRow.status).in_(finished))
                .order_by(col(ExecutionSessionRow.started_at).desc())
                .limit(limit),
            ).all()
        return [_to_session(row) for row in rows]


def state_to_payload(state: ControllerState) -> dict[str, Any]:
    """Serialize controller state to a JSON-compatible dict."""

    progress = state.current_progress
    return {
        "status": state.status.value,
        "current_task_id": state.current_task_id,
        "current_action": state.current_action,
        "session_id": state.session_id,
        "started_at": state.started_at.isoformat() if state.started_at else None,
        "processed_count": state.processed_count,
        "approved_count": state.approved_count,
        "rejected_count": state.rejected_count,
        "error_count": state.error_count,
        "current_progress": (
            {
                "phase": progress.phase.value,
                "step": progress.step,
                "total_steps": progress.total_steps,
                "description": progress.description,
                "started_at": progress.started_at.isoformat(),
            }
            if progress is not None
            else None
        ),
        "token_usage": {
            "input_tokens": state.token_usage.input_tokens,
            "output_tokens": state.token_usage.output_tokens,
            "limit": state.token_usage.limit,
            "reset_at": state.token_usage.reset_at.isoformat(),
        },
        "daily_token_usage": {
            "day": state.daily_token_usage.day.isoformat(),
            "input_tokens": state.daily_token_usage.input_tokens,
            "output_tokens": state.daily_token_usage.output_tokens,
        },
        "usage_limit_config": asdict(state.usage_limit_config),
        "usage_limit_status": state.usage_limit_status.value,
        "paused_due_to_limit": state.paused_due_to_limit,
    }


def state_from_payload(payload: dict[str, Any]) -> ControllerState:
    """Inverse of `state_to_payload`."""

    progress = payload.get("current_progress")
    token_usage = payload["token_usage"]
    daily = payload["daily_token_usage"]
    started_at = payload.get("started_at")
    return ControllerState(
        status=ControllerStatus(payload["status"]),
        current_task_id=payload.get("current_task_id"),
        current_action=payload.get("current_action"),
        session_id=payload.get("session_id"),
        started_at=from_iso(started_at) if started_at else None,
        processed_count=int(payload.get("processed_count", 0)),
        approved_count=int(payload.get("approved_count", 0)),
        rejected_count=int(payload.get("rejected_count", 0)),
        error_count=int(payload.get("error_count", 0)),
        current_progress=(
            ProgressState(
                phase=ControllerPhase(progress["phase"]),
                step=int(progress["step"]),
                total_steps=int(progress["total_steps"]),
                description=progress["description"],
                started_at=from_iso(progress["started_at"]),
            )
            if progress
            else None
        ),
        token_usage=TokenUsage(
            input_tokens=int(token_usage["input_tokens"]),
            output_tokens=int(token_usage["output_tokens"]),
            limit=int(token_usage["limit"]),
            reset_at=from_iso(token_usage["reset_at"]),
        ),
        daily_token_usage=DailyTokenUsage(
            day=date.fromisoformat(daily["day"]),
            input_tokens=int(daily["input_tokens"]),
            output_tokens=int(daily["output_tokens"]),
        ),
        usage_limit_config=UsageLimitConfig(**payload["usage_limit_config"]),
        usage_limit_status=UsageLimitStatus(payload["usage_limit_status"]),
        paused_due_to_limit=bool(payload.get("paused_due_to_limit", False)),
    )


def _apply_task_change(row: TaskRow, name: str, value: Any) -> None:
    if name == "blocked_by":
        row.blocked_by_json = _dump_blocked_by(tuple(value or ()))
        return
    if name == "status":
        row.status = TaskStatus(value).value
        return
    if name == "priority":
        row.priority = TaskPriority(value).value
        return
    if isinstance(value, datetime):
        value = to_db_datetime(value)
    setattr(row, name, value)


def _event_details(changes: dict[str, Any]) -> dict[str, object]:
    details: dict[str, object] = {}
    for name, value in changes.items():
        if name == "status":
            continue
        if isinstance(value, datetime):
            details[name] = to_utc_aware_datetime(value).isoformat()
        elif isinstance(value, TaskPriority):
            details[name] = value.value
        elif isinstance(value, tuple):
            details[name] = list(value)
        else:
            details[name] = value
    return details


def _dump_blocked_by(blocked_by: tuple[str, ...]) -> str | None:
    if not blocked_by:
        return None
    return json.dumps(list(blocked_by))


def _load_blocked_by(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return ()
    return tuple(str(item) for item in parsed)


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        title=row.title,
        description=row.description,
        status=TaskStatus(row.status),
        priority=TaskPriority(row.priority),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        last_error=row.last_error,
        last_attempt_at=optional_utc(row.last_attempt_at),
        next_retry_at=optional_utc(row.next_retry_at),
        blocked_by=_load_blocked_by(row.blocked_by_json),
        scheduled_at=optional_utc(row.scheduled_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_approval_request(row: ApprovalRequestRow) -> ApprovalRequest:
    return ApprovalRequest(
        request_id=row.request_id,
        task_id=row.task_id,
        task_title=row.task_title,
        action_type=ApprovalActionType(row.action_type),
        description=row.description,
        details=row.details,
        status=ApprovalStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
    )


def _to_action_log(row: ActionLogRow) -> ActionLogView:
    return ActionLogView(
        log_id=row.log_id,
        task_id=row.task_id,
        task_title=row.task_title,
        action_type=row.action_type,
        description=row.description,
        auto_approved=row.auto_approved,
        result=ActionResult(row.result),
        output=row.output,
        duration_ms=row.duration_ms,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_session(row: ExecutionSessionRow) -> ExecutionSession:
    return ExecutionSession(
        session_id=row.session_id,
        task_id=row.task_id,
        task_title=row.task_title,
        status=SessionStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        ended_at=optional_utc(row.ended_at),
        last_activity_at=to_utc_aware_datetime(row.last_activity_at),
        tool_calls=row.tool_calls,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cost_usd=row.cost_usd,
        error=row.error,
        result=row.result,
    )


def _to_log_entry(row: SessionLogRow) -> SessionLogEntry:
    return SessionLogEntry(
        entry_id=row.id or 0,
        session_id=row.session_id,
        entry_type=row.entry_type,
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
        details=_load_json_dict(row.details_json),
    )


def _to_operator_command(row: OperatorCommandRow) -> OperatorCommand:
    return OperatorCommand(
        command_id=row.command_id,
        name=row.name,
        payload=_load_json_dict(row.payload_json),
        status=OperatorCommandStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        processed_at=optional_utc(row.processed_at),
        result=row.result,
    )
