"""SQLModel ORM tables for controller storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

CONTROLLER_STATE_ROW_ID = 1


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_selection", "status", "priority", "created_at"),)

    task_id: str = Field(primary_key=True)
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    priority: str = Field(default="medium", index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    next_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    blocked_by_json: str | None = Field(default=None, sa_column=Column(Text))
    scheduled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ControllerStateRow(SQLModel, table=True):
    __tablename__ = "controller_state"  # type: ignore[bad-override]

    id: int = Field(default=CONTROLLER_STATE_ROW_ID, primary_key=True)
    state_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ControllerSettingRow(SQLModel, table=True):
    __tablename__ = "controller_settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ApprovalRequestRow(SQLModel, table=True):
    __tablename__ = "approval_requests"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_approval_requests_status_time", "status", "created_at"),)

    request_id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    task_title: str
    action_type: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    details: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ActionLogRow(SQLModel, table=True):
    __tablename__ = "action_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_action_logs_time", "created_at"),)

    log_id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    task_title: str
    action_type: str = Field(index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    auto_approved: bool = Field(default=False)
    result: str
    output: str | None = Field(default=None, sa_column=Column(Text))
    duration_ms: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TokenHistoryRow(SQLModel, table=True):
    __tablename__ = "token_history"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    hour_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionSessionRow(SQLModel, table=True):
    __tablename__ = "execution_sessions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_execution_sessions_status_time", "status", "started_at"),)

    session_id: str = Field(primary_key=True)
    task_id: str = Field(index=True)
    task_title: str
    status: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_activity_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    tool_calls: int = Field(default=0)
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    cost_usd: float | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    result: str | None = Field(default=None, sa_column=Column(Text))


class SessionLogRow(SQLModel, table=True):
    __tablename__ = "session_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_session_logs_session_time", "session_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("execution_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    entry_type: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OperatorCommandRow(SQLModel, table=True):
    __tablename__ = "operator_commands"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_operator_commands_status_time", "status", "created_at"),)

    command_id: str = Field(primary_key=True)
    name: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    result: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    processed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
