"""Domain models for the supervisory controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states owned by the task store."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskPriority(str, Enum):
    """Selection priority bands; lower rank runs first."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {TaskPriority.HIGH: 0, TaskPriority.MEDIUM: 1, TaskPriority.LOW: 2}


class ControllerStatus(str, Enum):
    """Global controller states."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_APPROVAL = "waiting_approval"
    WINDING_DOWN = "winding_down"


class ControllerPhase(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    IDLE = "idle"


class UsageLimitStatus(str, Enum):
    """Budget classification of current token consumption."""

    OK = "ok"
    WARNING = "warning"
    APPROACHING_LIMIT = "approaching_limit"
    AT_LIMIT = "at_limit"


class ApprovalActionType(str, Enum):
    """Risky action categories that need human sign-off."""

    PLANNING = "planning"
    ARCHITECTURE = "architecture"
    GIT_PUSH = "git_push"
    LARGE_EDIT = "large_edit"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class SessionStatus(str, Enum):
    """Execution session lifecycle; the last three values are terminal."""

    STARTING = "starting"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_SESSION_STATUSES


_TERMINAL_SESSION_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED},
)


class ActionResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for adding a task to the store."""

    title: str
    description: str | None = None
    task_id: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    max_retries: int = 3
    blocked_by: tuple[str, ...] = ()
    scheduled_at: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view used by selection and the state machine."""

    task_id: str
    title: str
    description: str | None
    status: TaskStatus
    priority: TaskPriority
    retry_count: int
    max_retries: int
    last_error: str | None
    last_attempt_at: datetime | None
    next_retry_at: datetime | None
    blocked_by: tuple[str, ...]
    scheduled_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class ProgressState:
    """Ephemeral phase/step indicator for the task in flight."""

    phase: ControllerPhase
    step: int
    total_steps: int
    description: str
    started_at: datetime


@dataclass(slots=True)
class TokenUsage:
    """Rolling hourly token bucket."""

    input_tokens: int
    output_tokens: int
    limit: int
    reset_at: datetime

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class DailyTokenUsage:
    """Calendar-day (UTC) token accumulator."""

    day: date
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class UsageLimitConfig:
    """Budget thresholds; percentages are fractions of the hourly/daily maxima."""

    max_tokens_per_hour: int = 200_000
    max_tokens_per_day: int = 1_000_000
    pause_threshold: float = 0.8
    warning_threshold: float = 0.6
    auto_resume_on_reset: bool = True


@dataclass(slots=True)
class ControllerState:
    """Process-wide controller snapshot mutated only by the state machine."""

    status: ControllerStatus
    token_usage: TokenUsage
    daily_token_usage: DailyTokenUsage
    usage_limit_config: UsageLimitConfig
    usage_limit_status: UsageLimitStatus = UsageLimitStatus.OK
    paused_due_to_limit: bool = False
    current_task_id: str | None = None
    current_action: str | None = None
    session_id: str | None = None
    started_at: datetime | None = None
    processed_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    error_count: int = 0
    current_progress: ProgressState | None = None


@dataclass(slots=True)
class ApprovalRequest:
    """One action pending human sign-off."""

    request_id: str
    task_id: str
    task_title: str
    action_type: ApprovalActionType
    description: str
    details: str
    status: ApprovalStatus
    created_at: datetime
    expires_at: datetime


@dataclass(slots=True)
class AutoApprovalRules:
    """Rule-based resolution of pending approvals during timeout sweeps."""

    enabled: bool = False
    allowed_action_types: tuple[ApprovalActionType, ...] = (ApprovalActionType.PLANNING,)
    max_pending_time_minutes: int = 0
    require_confirmation_for_git_push: bool = True


@dataclass(slots=True)
class ActionLogWrite:
    """Audit entry for one controller decision."""

    task_id: str
    task_title: str
    action_type: str
    description: str
    auto_approved: bool
    result: ActionResult
    output: str | None = None
    duration_ms: int = 0


@dataclass(slots=True)
class ActionLogView:
    log_id: str
    task_id: str
    task_title: str
    action_type: str
    description: str
    auto_approved: bool
    result: ActionResult
    output: str | None
    duration_ms: int
    created_at: datetime


@dataclass(slots=True)
class TokenHistoryEntry:
    """Archived hourly bucket."""

    hour_start: datetime
    input_tokens: int
    output_tokens: int


@dataclass(slots=True)
class ExecutionSession:
    """Lifecycle record of one task attempt."""

    session_id: str
    task_id: str
    task_title: str
    status: SessionStatus
    started_at: datetime
    ended_at: datetime | None
    last_activity_at: datetime
    tool_calls: int
    input_tokens: int
    output_tokens: int
    cost_usd: float | None
    error: str | None
    result: str | None


@dataclass(slots=True)
class SessionLogEntry:
    entry_id: int
    session_id: str
    entry_type: str
    content: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


class OperatorCommandStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class OperatorCommand:
    """Operator request queued by the CLI for the running controller."""

    command_id: str
    name: str
    payload: dict[str, Any]
    status: OperatorCommandStatus
    created_at: datetime
    processed_at: datetime | None = None
    result: str | None = None
