"""Database-backed operator inbox feeding the running controller actor."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from agent_controller.controller.actor import ControllerActor
from agent_controller.controller.models import OperatorCommand, OperatorCommandStatus
from agent_controller.controller.repository import ControllerRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMMAND_ACTIVATE = "activate"
COMMAND_DEACTIVATE = "deactivate"
COMMAND_PAUSE = "pause"
COMMAND_RESUME = "resume"
COMMAND_APPROVE = "approve"
COMMAND_REJECT = "reject"
COMMAND_CANCEL_SESSION = "cancel_session"
COMMAND_UPDATE_LIMITS = "update_limits"
COMMAND_RESET_USAGE = "reset_usage"
COMMAND_SWEEP_APPROVALS = "sweep_approvals"

OPERATOR_COMMANDS = frozenset(
    {
        COMMAND_ACTIVATE,
        COMMAND_DEACTIVATE,
        COMMAND_PAUSE,
        COMMAND_RESUME,
        COMMAND_APPROVE,
        COMMAND_REJECT,
        COMMAND_CANCEL_SESSION,
        COMMAND_UPDATE_LIMITS,
        COMMAND_RESET_USAGE,
        COMMAND_SWEEP_APPROVALS,
    },
)


class CommandRejectedError(RuntimeError):
    """Operator command could not be applied."""


class CommandInbox:
    """Polls `operator_commands` and replays them through the actor's public API.

    Runs on its own thread so that a `deactivate` or `cancel_session` queued while a
    task is executing reaches the cancel flag without waiting for the actor.
    Other commands wait for the actor without a deadline and resolve once applied,
    even when an agent attempt keeps the actor busy for a long time.
    """

    def __init__(
        self,
        repository: ControllerRepository,
        actor: ControllerActor,
        *,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.repository = repository
        self.actor = actor
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="controller-inbox",
        )
        self._thread.start()
        logger.info("Operator inbox started (poll=%.1fs)", self.poll_interval_seconds)

    def stop(self, *, timeout: float = 10.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Operator inbox stopped")

    def drain_once(self) -> int:
        """Apply every pending command; returns how many were resolved."""

        resolved = 0
        for command in self.repository.list_pending_commands():
            try:
                result = self._dispatch(command)
            except CommandRejectedError as error:
                logger.warning("Operator command %s rejected: %s", command.name, error)
                status, result = OperatorCommandStatus.FAILED, str(error)
            except Exception as error:
                logger.exception("Operator command %s failed", command.name)
                status, result = OperatorCommandStatus.FAILED, str(error) or type(error).__name__
            else:
                status = OperatorCommandStatus.DONE
            if self.repository.complete_command(command.command_id, status=status, result=result):
                resolved += 1
        return resolved

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.drain_once()
            except Exception:
                logger.exception("Operator inbox poll failed")
            self._stop.wait(timeout=self.poll_interval_seconds)

    def _wait(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run `fn` on the actor and block until it is applied, however long the attempt takes."""

        if not self.actor.running:
            raise RuntimeError("Controller actor is not running.")
        return self.actor.submit(fn, *args, **kwargs).result()

    def _dispatch(self, command: OperatorCommand) -> str:  # noqa: PLR0911, C901
        payload = command.payload
        name = command.name
        machine = self.actor.machine
        if name == COMMAND_ACTIVATE:
            return _status_line(self._wait(machine.activate).status.value)
        if name == COMMAND_DEACTIVATE:
            machine.request_cancel()
            return _status_line(self._wait(machine.deactivate).status.value)
        if name == COMMAND_PAUSE:
            return _status_line(self._wait(machine.pause).status.value)
        if name == COMMAND_RESUME:
            return _status_line(self._wait(machine.resume).status.value)
        if name == COMMAND_APPROVE:
            request_id = _required(payload, "request_id")
            if self._wait(machine.approve, request_id) is None:
                raise CommandRejectedError(f"Approval request not found: {request_id}")
            return f"approved={request_id}"
        if name == COMMAND_REJECT:
            request_id = _required(payload, "request_id")
            if self._wait(machine.reject, request_id, payload.get("reason")) is None:
                raise CommandRejectedError(f"Approval request not found: {request_id}")
            return f"rejected={request_id}"
        if name == COMMAND_CANCEL_SESSION:
            session_id = _required(payload, "session_id")
            cancelled = machine.request_cancel(session_id) or self._wait(
                machine.cancel_session,
                session_id,
            )
            if not cancelled:
                raise CommandRejectedError(f"Session is not active: {session_id}")
            return f"cancelled={session_id}"
        if name == COMMAND_UPDATE_LIMITS:
            config = self._wait(machine.update_usage_limit_config, **payload)
            return (
                f"max_tokens_per_hour={config.max_tokens_per_hour} "
                f"max_tokens_per_day={config.max_tokens_per_day}"
            )
        if name == COMMAND_RESET_USAGE:
            state = self._wait(machine.reset_token_usage)
            return f"usage_limit_status={state.usage_limit_status.value}"
        if name == COMMAND_SWEEP_APPROVALS:
            sweep = self._wait(machine.process_approval_timeouts)
            return f"expired={len(sweep.expired)} auto_approved={len(sweep.auto_approvable)}"
        raise CommandRejectedError(f"Unknown operator command: {name!r}")


def _required(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise CommandRejectedError(f"Missing {key!r} in command payload.")
    return value


def _status_line(status: str) -> str:
    return f"status={status}"
