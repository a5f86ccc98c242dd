from __future__ import annotations

import threading
import time

import allure
import pytest

from agent_controller.controller.actor import ControllerActor
from agent_controller.controller.executor import AgentRunRequest, AgentRunResult
from agent_controller.controller.models import ControllerStatus, TaskStatus

pytestmark = [
    allure.epic("Controller"),
    allure.feature("Actor Runtime"),
]


def _wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition not reached in time")


@pytest.fixture()
def actor_factory(build_machine):
    actors: list[ControllerActor] = []

    def _build(*, tick_interval_seconds: float = 0.05, **overrides) -> ControllerActor:
        actor = ControllerActor(
            build_machine(**overrides),
            tick_interval_seconds=tick_interval_seconds,
            approval_sweep_interval_seconds=0.2,
            call_timeout_seconds=10.0,
        )
        actors.append(actor)
        return actor

    yield _build
    for actor in actors:
        actor.stop()


def test_calls_fail_fast_before_start(actor_factory) -> None:
    actor = actor_factory()

    with pytest.raises(RuntimeError, match="not running"):
        actor.get_state()


def test_start_initializes_idle_controller(actor_factory) -> None:
    actor = actor_factory()

    state = actor.start()

    assert state.status == ControllerStatus.IDLE
    assert actor.running is True
    with pytest.raises(RuntimeError, match="already running"):
        actor.start()
    actor.stop()
    assert actor.running is False


def test_activated_actor_processes_queue_on_its_own(actor_factory, repositories) -> None:
    first = repositories.add_task("First")
    second = repositories.add_task("Second")
    actor = actor_factory()
    actor.start()

    actor.activate()

    _wait_until(
        lambda: all(
            repositories.tasks.get_task(task.task_id).status == TaskStatus.DONE
            for task in (first, second)
        ),
    )
    state = actor.get_state()
    assert state.status == ControllerStatus.RUNNING
    assert state.processed_count == 2


def test_deactivate_cancels_running_attempt(actor_factory, repositories, executor) -> None:
    task = repositories.add_task("Slow build")
    started = threading.Event()

    def _block_until_cancelled(request: AgentRunRequest) -> AgentRunResult:
        started.set()
        while not request.cancel_requested():
            time.sleep(0.01)
        return AgentRunResult(
            success=False,
            duration_ms=1,
            error="Execution cancelled",
            cancelled=True,
        )

    executor.then(_block_until_cancelled)
    actor = actor_factory(tick_interval_seconds=30.0)
    actor.start()
    actor.activate()
    assert started.wait(timeout=10)

    state = actor.deactivate()

    assert state.status == ControllerStatus.IDLE
    assert repositories.tasks.get_task(task.task_id).status == TaskStatus.TODO
    assert repositories.sessions.list_active() == []


def test_commands_from_many_threads_are_serialized(actor_factory) -> None:
    actor = actor_factory()
    actor.start()
    inside = 0
    overlaps: list[int] = []
    lock = threading.Lock()

    def _critical() -> None:
        nonlocal inside
        with lock:
            inside += 1
            overlaps.append(inside)
        time.sleep(0.01)
        with lock:
            inside -= 1

    threads = [
        threading.Thread(target=lambda: actor.submit(_critical).result(timeout=10))
        for _ in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(overlaps) == 8
    assert max(overlaps) == 1


def test_command_errors_propagate_to_caller(actor_factory) -> None:
    actor = actor_factory()
    actor.start()

    with pytest.raises(ValueError, match="Thresholds"):
        actor.update_usage_limit_config(warning_threshold=0.95, pause_threshold=0.9)

    assert actor.get_state().status == ControllerStatus.IDLE


def test_cancel_session_for_idle_actor_cancels_stored_session(
    actor_factory,
    repositories,
) -> None:
    actor = actor_factory()
    actor.start()
    session = actor.machine.sessions.start(repositories.add_task("Stale"))

    assert actor.cancel_session(session.session_id) is True
    assert actor.cancel_session(session.session_id) is False
