from __future__ import annotations

import threading
import time

import allure
import pytest

from agent_controller.controller.actor import ControllerActor
from agent_controller.controller.inbox import (
    COMMAND_ACTIVATE,
    COMMAND_APPROVE,
    COMMAND_CANCEL_SESSION,
    COMMAND_PAUSE,
    COMMAND_REJECT,
    COMMAND_RESET_USAGE,
    COMMAND_SWEEP_APPROVALS,
    COMMAND_UPDATE_LIMITS,
    CommandInbox,
)
from agent_controller.controller.models import ControllerStatus, OperatorCommandStatus
from conftest import success

pytestmark = [
    allure.epic("Controller"),
    allure.feature("Operator Inbox"),
]


@pytest.fixture()
def started_actor(build_machine):
    # long tick interval: commands drive the machine, not the loop
    actor = ControllerActor(
        build_machine(),
        tick_interval_seconds=60.0,
        approval_sweep_interval_seconds=60.0,
        call_timeout_seconds=10.0,
    )
    actor.start()
    yield actor
    actor.stop()


def _drain(repositories, actor, name, payload=None):
    command = repositories.controller.enqueue_command(name, payload)
    assert CommandInbox(repositories.controller, actor).drain_once() == 1
    resolved = repositories.controller.get_command(command.command_id)
    assert resolved is not None
    return resolved


def test_lifecycle_commands_are_applied_in_order(repositories, started_actor) -> None:
    repositories.controller.enqueue_command(COMMAND_ACTIVATE)
    repositories.controller.enqueue_command(COMMAND_PAUSE)

    inbox = CommandInbox(repositories.controller, started_actor)

    assert inbox.drain_once() == 2
    assert inbox.drain_once() == 0
    assert started_actor.get_state().status == ControllerStatus.PAUSED
    assert repositories.controller.list_pending_commands() == []


def test_activate_reports_resulting_status(repositories, started_actor) -> None:
    command = _drain(repositories, started_actor, COMMAND_ACTIVATE)

    assert command.status == OperatorCommandStatus.DONE
    assert command.result == "status=running"
    assert command.processed_at is not None


def test_unknown_approval_is_marked_failed(repositories, started_actor) -> None:
    approve = _drain(repositories, started_actor, COMMAND_APPROVE, {"request_id": "nope"})
    reject = _drain(repositories, started_actor, COMMAND_REJECT, {"request_id": "nope"})
    missing = _drain(repositories, started_actor, COMMAND_APPROVE, {})

    assert approve.status == OperatorCommandStatus.FAILED
    assert approve.result == "Approval request not found: nope"
    assert reject.status == OperatorCommandStatus.FAILED
    assert missing.result == "Missing 'request_id' in command payload."


def test_approve_command_resolves_pending_request(
    repositories,
    started_actor,
    executor,
) -> None:
    task = repositories.add_task("Split module")
    executor.then(success("My plan: split the module in two."))
    started_actor.activate()
    started_actor.tick()
    request = started_actor.list_pending_approvals()[0]

    command = _drain(
        repositories,
        started_actor,
        COMMAND_APPROVE,
        {"request_id": request.request_id},
    )

    assert command.status == OperatorCommandStatus.DONE
    assert command.result == f"approved={request.request_id}"
    assert repositories.tasks.get_task(task.task_id).status.value == "done"


def test_update_limits_and_reset_usage(repositories, started_actor) -> None:
    limits = _drain(
        repositories,
        started_actor,
        COMMAND_UPDATE_LIMITS,
        {"max_tokens_per_hour": 4000, "max_tokens_per_day": 9000},
    )
    invalid = _drain(
        repositories,
        started_actor,
        COMMAND_UPDATE_LIMITS,
        {"pause_threshold": 2.0},
    )
    reset = _drain(repositories, started_actor, COMMAND_RESET_USAGE)

    assert limits.result == "max_tokens_per_hour=4000 max_tokens_per_day=9000"
    assert invalid.status == OperatorCommandStatus.FAILED
    assert "Thresholds" in (invalid.result or "")
    assert reset.result == "usage_limit_status=ok"


def test_sweep_and_cancel_commands(repositories, started_actor) -> None:
    sweep = _drain(repositories, started_actor, COMMAND_SWEEP_APPROVALS)
    cancel = _drain(
        repositories,
        started_actor,
        COMMAND_CANCEL_SESSION,
        {"session_id": "session-none"},
    )

    assert sweep.result == "expired=0 auto_approved=0"
    assert cancel.status == OperatorCommandStatus.FAILED
    assert cancel.result == "Session is not active: session-none"


def test_unknown_command_name_is_rejected(repositories, started_actor) -> None:
    command = _drain(repositories, started_actor, "self_destruct")

    assert command.status == OperatorCommandStatus.FAILED
    assert command.result == "Unknown operator command: 'self_destruct'"


def test_commands_fail_when_actor_is_not_running(repositories, build_machine) -> None:
    actor = ControllerActor(build_machine())

    command = _drain(repositories, actor, COMMAND_ACTIVATE)

    assert command.status == OperatorCommandStatus.FAILED
    assert command.result == "Controller actor is not running."


def test_background_thread_drains_queue(repositories, started_actor) -> None:
    inbox = CommandInbox(repositories.controller, started_actor, poll_interval_seconds=0.05)
    command = repositories.controller.enqueue_command(COMMAND_ACTIVATE)
    inbox.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            stored = repositories.controller.get_command(command.command_id)
            if stored is not None and stored.status != OperatorCommandStatus.PENDING:
                break
            time.sleep(0.05)
    finally:
        inbox.stop()

    assert stored is not None
    assert stored.status == OperatorCommandStatus.DONE
    assert started_actor.get_state().status == ControllerStatus.RUNNING


def test_command_waits_out_a_long_attempt(repositories, build_machine, executor) -> None:
    attempt_started = threading.Event()
    release = threading.Event()

    def slow_attempt(_request):
        attempt_started.set()
        release.wait(timeout=10)
        return success("Updated the handler and its unit test.")

    repositories.add_task("Slow refactor")
    executor.then(slow_attempt)
    actor = ControllerActor(
        build_machine(),
        tick_interval_seconds=60.0,
        approval_sweep_interval_seconds=60.0,
        call_timeout_seconds=0.2,
    )
    actor.start()
    timer = threading.Timer(1.0, release.set)
    try:
        actor.activate()
        assert attempt_started.wait(timeout=10)
        timer.start()

        command = _drain(repositories, actor, COMMAND_PAUSE)
        state = actor.get_state()
    finally:
        release.set()
        timer.cancel()
        actor.stop()

    assert command.status == OperatorCommandStatus.DONE
    assert command.result == "status=paused"
    assert state.status == ControllerStatus.PAUSED
