from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure

from agent_controller.controller.models import TaskPriority, TaskStatus, TaskView
from agent_controller.controller.scheduling import (
    BlockedBy,
    NotTodo,
    Ready,
    RetryAt,
    ScheduledAt,
    compute_retry_delay,
    get_next_executable_task,
    next_executable_time,
    readiness,
    schedule_retry,
    task_stats,
    update_blocked_status,
)

pytestmark = [
    allure.epic("Controller"),
    allure.feature("Task Selection & Retries"),
]

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def _task(  # noqa: PLR0913
    task_id: str,
    *,
    status: TaskStatus = TaskStatus.TODO,
    priority: TaskPriority = TaskPriority.MEDIUM,
    blocked_by: tuple[str, ...] = (),
    next_retry_at: datetime | None = None,
    scheduled_at: datetime | None = None,
    created_offset_minutes: int = 0,
) -> TaskView:
    created_at = NOW - timedelta(hours=1) + timedelta(minutes=created_offset_minutes)
    return TaskView(
        task_id=task_id,
        title=f"Task {task_id}",
        description=None,
        status=status,
        priority=priority,
        retry_count=0,
        max_retries=3,
        last_error=None,
        last_attempt_at=None,
        next_retry_at=next_retry_at,
        blocked_by=blocked_by,
        scheduled_at=scheduled_at,
        created_at=created_at,
        updated_at=created_at,
    )


def test_selection_prefers_high_priority_over_older_low_priority_task() -> None:
    tasks = [
        _task("B", priority=TaskPriority.LOW, created_offset_minutes=0),
        _task("A", priority=TaskPriority.HIGH, created_offset_minutes=10),
    ]

    selected = get_next_executable_task(tasks, NOW)

    assert selected is not None
    assert selected.task_id == "A"


def test_selection_breaks_priority_ties_by_creation_time() -> None:
    tasks = [
        _task("late", created_offset_minutes=20),
        _task("early", created_offset_minutes=5),
        _task("middle", created_offset_minutes=10),
    ]

    selected = get_next_executable_task(tasks, NOW)

    assert selected is not None
    assert selected.task_id == "early"
    assert get_next_executable_task(list(reversed(tasks)), NOW).task_id == "early"


def test_selection_skips_blocked_retrying_scheduled_and_non_todo_tasks() -> None:
    tasks = [
        _task("done", status=TaskStatus.DONE, priority=TaskPriority.HIGH),
        _task("running", status=TaskStatus.IN_PROGRESS, priority=TaskPriority.HIGH),
        _task("waiting-dep", priority=TaskPriority.HIGH, blocked_by=("missing",)),
        _task("backoff", priority=TaskPriority.HIGH, next_retry_at=NOW + timedelta(minutes=2)),
        _task("later", priority=TaskPriority.HIGH, scheduled_at=NOW + timedelta(hours=1)),
        _task("ready", priority=TaskPriority.LOW),
    ]

    selected = get_next_executable_task(tasks, NOW)

    assert selected is not None
    assert selected.task_id == "ready"


def test_selection_returns_none_when_nothing_is_ready() -> None:
    tasks = [_task("later", scheduled_at=NOW + timedelta(minutes=5))]

    assert get_next_executable_task(tasks, NOW) is None
    assert get_next_executable_task([], NOW) is None


def test_readiness_checks_run_in_order() -> None:
    retry_at = NOW + timedelta(minutes=4)
    scheduled_at = NOW + timedelta(minutes=30)

    assert readiness(_task("x", status=TaskStatus.FAILED), set(), NOW) == NotTodo(
        TaskStatus.FAILED,
    )
    assert readiness(
        _task("x", blocked_by=("a", "b"), next_retry_at=retry_at),
        {"a"},
        NOW,
    ) == BlockedBy(("b",))
    assert readiness(
        _task("x", next_retry_at=retry_at, scheduled_at=scheduled_at),
        set(),
        NOW,
    ) == RetryAt(retry_at)
    assert readiness(_task("x", scheduled_at=scheduled_at), set(), NOW) == ScheduledAt(
        scheduled_at,
    )
    assert readiness(_task("x", next_retry_at=NOW), set(), NOW) == Ready()


def test_next_executable_time_reports_earliest_time_gate() -> None:
    tasks = [
        _task("a", scheduled_at=NOW + timedelta(minutes=30)),
        _task("b", next_retry_at=NOW + timedelta(minutes=8)),
        _task("c", blocked_by=("a",)),
    ]

    assert next_executable_time(tasks, NOW) == NOW + timedelta(minutes=8)
    assert next_executable_time([*tasks, _task("ready")], NOW) is None
    assert next_executable_time([_task("c", blocked_by=("a",))], NOW) is None


def test_next_executable_time_uses_schedule_hidden_behind_retry_gate() -> None:
    tasks = [
        _task(
            "a",
            next_retry_at=NOW + timedelta(minutes=2),
            scheduled_at=NOW + timedelta(minutes=45),
        ),
    ]

    assert next_executable_time(tasks, NOW) == NOW + timedelta(minutes=45)


def test_compute_retry_delay_is_monotonic_and_capped() -> None:
    delays = [compute_retry_delay(count) for count in range(0, 12)]

    assert delays[1] == timedelta(minutes=2)
    assert delays[2] == timedelta(minutes=4)
    assert delays[3] == timedelta(minutes=8)
    assert delays[4] == timedelta(minutes=16)
    assert all(left <= right for left, right in zip(delays, delays[1:], strict=False))
    assert max(delays) == timedelta(minutes=16)


def test_task_stats_counts_every_status() -> None:
    stats = task_stats(
        [
            _task("a"),
            _task("b"),
            _task("c", status=TaskStatus.DONE),
        ],
    )

    assert stats[TaskStatus.TODO] == 2
    assert stats[TaskStatus.DONE] == 1
    assert stats[TaskStatus.FAILED] == 0
    assert set(stats) == set(TaskStatus)


def test_schedule_retry_fails_task_after_max_retries(repositories) -> None:
    task = repositories.add_task("Flaky build", task_id="C", max_retries=2)

    first = schedule_retry(repositories.tasks, task.task_id, "boom 1", NOW)
    assert first is not None
    assert first.status == TaskStatus.TODO
    assert first.retry_count == 1
    assert first.last_error == "boom 1"
    assert first.next_retry_at == NOW + timedelta(minutes=2)

    second = schedule_retry(repositories.tasks, task.task_id, "boom 2", NOW)
    assert second is not None
    assert second.status == TaskStatus.FAILED
    assert second.retry_count == 2
    assert second.last_error == "boom 2"
    assert second.next_retry_at is None


def test_schedule_retry_ignores_unknown_task(repositories) -> None:
    assert schedule_retry(repositories.tasks, "missing", "boom", NOW) is None


def test_dependency_sweep_unblocks_task_once_dependency_is_done(repositories) -> None:
    repositories.add_task("Prepare fixtures", task_id="E")
    repositories.add_task("Use fixtures", task_id="D", blocked_by=("E",))

    assert update_blocked_status(repositories.tasks) == 1
    assert repositories.tasks.get_task("D").status == TaskStatus.BLOCKED
    selected = get_next_executable_task(repositories.tasks.list_tasks(), NOW)
    assert selected is not None
    assert selected.task_id == "E"

    repositories.tasks.update_task("E", status=TaskStatus.DONE)
    assert update_blocked_status(repositories.tasks) == 1

    assert repositories.tasks.get_task("D").status == TaskStatus.TODO
    selected = get_next_executable_task(repositories.tasks.list_tasks(), NOW)
    assert selected is not None
    assert selected.task_id == "D"
    assert update_blocked_status(repositories.tasks) == 0
