"""Task selection, retry backoff and dependency unblocking."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

from agent_controller.controller.models import TaskStatus, TaskView

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = timedelta(seconds=60)
RETRY_MAX_DELAY = timedelta(minutes=16)


class TaskStore(Protocol):
    """Narrow task-store surface the controller depends on."""

    def list_tasks(self) -> list[TaskView]: ...

    def get_task(self, task_id: str) -> TaskView | None: ...

    def update_task(self, task_id: str, **changes: Any) -> TaskView | None: ...


@dataclass(slots=True, frozen=True)
class Ready:
    pass


@dataclass(slots=True, frozen=True)
class NotTodo:
    status: TaskStatus


@dataclass(slots=True, frozen=True)
class BlockedBy:
    task_ids: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class RetryAt:
    at: datetime


@dataclass(slots=True, frozen=True)
class ScheduledAt:
    at: datetime


Readiness = Ready | NotTodo | BlockedBy | RetryAt | ScheduledAt


def readiness(task: TaskView, done_ids: set[str], now: datetime) -> Readiness:
    """Explain whether `task` can run now; checks are ordered."""

    if task.status != TaskStatus.TODO:
        return NotTodo(task.status)
    unmet = tuple(dep for dep in task.blocked_by if dep not in done_ids)
    if unmet:
        return BlockedBy(unmet)
    if task.next_retry_at is not None and task.next_retry_at > now:
        return RetryAt(task.next_retry_at)
    if task.scheduled_at is not None and task.scheduled_at > now:
        return ScheduledAt(task.scheduled_at)
    return Ready()


def _done_ids(tasks: Iterable[TaskView]) -> set[str]:
    return {task.task_id for task in tasks if task.status == TaskStatus.DONE}


def get_next_executable_task(tasks: Sequence[TaskView], now: datetime) -> TaskView | None:
    """Pick the highest-priority, oldest ready task."""

    done_ids = _done_ids(tasks)
    ready = [task for task in tasks if isinstance(readiness(task, done_ids, now), Ready)]
    if not ready:
        return None
    ready.sort(key=lambda task: (task.priority.rank, task.created_at))
    return ready[0]


def next_executable_time(tasks: Sequence[TaskView], now: datetime) -> datetime | None:
    """Earliest time a currently waiting todo task becomes ready.

    Returns None when something is ready right now or nothing is waiting on time.
    """

    done_ids = _done_ids(tasks)
    earliest: datetime | None = None
    for task in tasks:
        state = readiness(task, done_ids, now)
        if isinstance(state, Ready):
            return None
        if isinstance(state, RetryAt | ScheduledAt):
            candidate = state.at
            # a retry gate may hide a later schedule gate
            if (
                isinstance(state, RetryAt)
                and task.scheduled_at is not None
                and task.scheduled_at > candidate
            ):
                candidate = task.scheduled_at
            if earliest is None or candidate < earliest:
                earliest = candidate
    return earliest


def task_stats(tasks: Iterable[TaskView]) -> dict[TaskStatus, int]:
    counts = Counter(task.status for task in tasks)
    return {status: counts.get(status, 0) for status in TaskStatus}


def compute_retry_delay(retry_count: int) -> timedelta:
    """Backoff for the attempt numbered `retry_count`: 2, 4, 8, 16 minutes, capped at 16."""

    exponent = min(max(retry_count, 0), 10)
    return min(RETRY_BASE_DELAY * (2**exponent), RETRY_MAX_DELAY)


def schedule_retry(
    store: TaskStore,
    task_id: str,
    error: str,
    now: datetime,
) -> TaskView | None:
    """Record a failed attempt; the task is requeued with backoff or failed for good."""

    task = store.get_task(task_id)
    if task is None:
        return None

    retry_count = task.retry_count + 1
    if retry_count >= task.max_retries:
        logger.info(
            "Task %s failed permanently after %s attempt(s): %s",
            task_id,
            retry_count,
            error,
        )
        return store.update_task(
            task_id,
            status=TaskStatus.FAILED,
            retry_count=retry_count,
            last_error=error,
            last_attempt_at=now,
            next_retry_at=None,
        )

    next_retry_at = now + compute_retry_delay(retry_count)
    logger.info(
        "Task %s scheduled for retry %s/%s at %s",
        task_id,
        retry_count,
        task.max_retries,
        next_retry_at.isoformat(),
    )
    return store.update_task(
        task_id,
        status=TaskStatus.TODO,
        retry_count=retry_count,
        last_error=error,
        last_attempt_at=now,
        next_retry_at=next_retry_at,
    )


def update_blocked_status(store: TaskStore) -> int:
    """Move tasks between todo and blocked as their dependencies resolve.

    Returns the number of tasks whose status changed.
    """

    tasks = store.list_tasks()
    done_ids = _done_ids(tasks)
    changed = 0
    for task in tasks:
        if not task.blocked_by or task.status in (TaskStatus.DONE, TaskStatus.IN_PROGRESS):
            continue
        all_met = all(dep in done_ids for dep in task.blocked_by)
        if all_met and task.status == TaskStatus.BLOCKED:
            store.update_task(task.task_id, status=TaskStatus.TODO)
            logger.info("Task %s unblocked", task.task_id)
            changed += 1
        elif not all_met and task.status == TaskStatus.TODO:
            store.update_task(task.task_id, status=TaskStatus.BLOCKED)
            logger.info("Task %s blocked by unfinished dependencies", task.task_id)
            changed += 1
    return changed
