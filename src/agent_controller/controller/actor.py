"""Single-writer runtime around the controller state machine."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, TypeVar

from agent_controller.controller.approvals import TimeoutSweep
from agent_controller.controller.machine import ControllerStateMachine
from agent_controller.controller.models import (
    ActionLogView,
    ApprovalRequest,
    AutoApprovalRules,
    ControllerState,
    UsageLimitConfig,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TICK_INTERVAL_SECONDS = 5.0
DEFAULT_APPROVAL_SWEEP_INTERVAL_SECONDS = 30.0
DEFAULT_CALL_TIMEOUT_SECONDS = 60.0


@dataclass(slots=True)
class _Message:
    fn: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    future: Future[Any] = field(default_factory=Future)


_STOP = object()


class ControllerActor:
    """Owns one `ControllerStateMachine` on a dedicated thread.

    External calls are posted to a mailbox and answered through futures, so the
    state machine is only ever touched by the actor thread. Ticks and approval
    sweeps are produced by the same thread and therefore never overlap with each
    other or with a command.
    """

    def __init__(
        self,
        machine: ControllerStateMachine,
        *,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        approval_sweep_interval_seconds: float = DEFAULT_APPROVAL_SWEEP_INTERVAL_SECONDS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self.machine = machine
        self.tick_interval_seconds = tick_interval_seconds
        self.approval_sweep_interval_seconds = approval_sweep_interval_seconds
        self.call_timeout_seconds = call_timeout_seconds
        self._mailbox: queue.Queue[_Message | object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._next_tick = 0.0
        self._next_sweep = 0.0

    # runtime

    def start(self) -> ControllerState:
        """Start the actor thread and reset the controller to `idle`."""

        if self._thread is not None:
            raise RuntimeError("Controller actor is already running.")
        now = time.monotonic()
        self._next_tick = now + self.tick_interval_seconds
        self._next_sweep = now + self.approval_sweep_interval_seconds
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="controller-actor",
        )
        self._thread.start()
        logger.info("Controller actor started")
        return self._call(self.machine.initialize)

    def stop(self, *, timeout: float = 15.0) -> None:
        if self._thread is None:
            return
        self.machine.request_cancel()
        self._mailbox.put(_STOP)
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Controller actor did not stop within %.1fs", timeout)
        self._thread = None
        logger.info("Controller actor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
        """Post `fn` to run on the actor thread."""

        message = _Message(fn=fn, args=args, kwargs=kwargs)
        if threading.current_thread() is self._thread:
            self._execute(message)
        else:
            self._mailbox.put(message)
        return message.future

    # public controller API

    def activate(self) -> ControllerState:
        return self._call(self.machine.activate)

    def deactivate(self) -> ControllerState:
        self.machine.request_cancel()
        return self._call(self.machine.deactivate)

    def pause(self) -> ControllerState:
        return self._call(self.machine.pause)

    def resume(self) -> ControllerState:
        return self._call(self.machine.resume)

    def tick(self) -> None:
        self._call(self.machine.tick)

    def get_state(self) -> ControllerState:
        return self._call(self.machine.get_state)

    def approve(self, request_id: str) -> ApprovalRequest | None:
        return self._call(self.machine.approve, request_id)

    def reject(self, request_id: str, reason: str | None = None) -> ApprovalRequest | None:
        return self._call(self.machine.reject, request_id, reason)

    def process_approval_timeouts(self) -> TimeoutSweep:
        return self._call(self.machine.process_approval_timeouts)

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        return self._call(self.machine.list_pending_approvals)

    def get_auto_approval_rules(self) -> AutoApprovalRules:
        return self._call(self.machine.get_auto_approval_rules)

    def update_auto_approval_rules(self, **changes: Any) -> AutoApprovalRules:
        return self._call(self.machine.update_auto_approval_rules, **changes)

    def update_usage_limit_config(self, **changes: Any) -> UsageLimitConfig:
        return self._call(self.machine.update_usage_limit_config, **changes)

    def reset_token_usage(self) -> ControllerState:
        return self._call(self.machine.reset_token_usage)

    def usage_percentages(self) -> dict[str, int]:
        return self._call(self.machine.usage_percentages)

    def action_logs(self, limit: int = 100) -> list[ActionLogView]:
        return self._call(self.machine.action_logs, limit)

    def cancel_session(self, session_id: str) -> bool:
        if self.machine.request_cancel(session_id):
            return True
        return self._call(self.machine.cancel_session, session_id)

    # internals

    def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if not self.running and threading.current_thread() is not self._thread:
            raise RuntimeError("Controller actor is not running.")
        return self.submit(fn, *args, **kwargs).result(timeout=self.call_timeout_seconds)

    def _run(self) -> None:
        while True:
            try:
                item = self._mailbox.get(timeout=self._wait_seconds())
            except queue.Empty:
                item = None

            if item is _STOP:
                self._reject_pending()
                break
            if isinstance(item, _Message):
                self._execute(item)

            if self.machine.consume_kick():
                self._next_tick = time.monotonic()
            self._run_due_work()

    def _reject_pending(self) -> None:
        while True:
            try:
                item = self._mailbox.get_nowait()
            except queue.Empty:
                return
            if isinstance(item, _Message) and item.future.set_running_or_notify_cancel():
                item.future.set_exception(RuntimeError("Controller actor stopped."))

    def _wait_seconds(self) -> float:
        now = time.monotonic()
        deadline = self._next_sweep
        if self.machine.loop_active:
            deadline = min(deadline, self._next_tick)
        return max(0.0, deadline - now)

    def _run_due_work(self) -> None:
        now = time.monotonic()
        if self.machine.loop_active and now >= self._next_tick:
            try:
                self.machine.tick()
            except Exception:
                logger.exception("Controller tick failed")
            self._next_tick = time.monotonic() + self.tick_interval_seconds

        now = time.monotonic()
        if now >= self._next_sweep:
            try:
                self.machine.process_approval_timeouts()
            except Exception:
                logger.exception("Approval timeout sweep failed")
            self._next_sweep = time.monotonic() + self.approval_sweep_interval_seconds

    def _execute(self, message: _Message) -> None:
        if not message.future.set_running_or_notify_cancel():
            return
        try:
            result = message.fn(*message.args, **message.kwargs)
        except Exception as error:
            logger.exception("Controller command %s failed", getattr(message.fn, "__name__", "?"))
            message.future.set_exception(error)
        else:
            message.future.set_result(result)
