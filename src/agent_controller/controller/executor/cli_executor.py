"""Subprocess runner for the `claude` CLI in stream-json mode."""

from __future__ import annotations

import logging
import os
import queue
import shlex
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import IO

from agent_controller.controller.executor.base import (
    AgentRunRequest,
    AgentRunResult,
    TokenUsageReport,
)
from agent_controller.controller.executor.stream import (
    EVENT_RESULT,
    StreamEvent,
    extract_usage_markers,
    parse_stream_line,
)
from agent_controller.controller.pricing import estimate_cost_usd

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = "claude"
CLAUDE_ARGS: tuple[str, ...] = (
    "--print",
    "--output-format",
    "stream-json",
    "--verbose",
    "--dangerously-skip-permissions",
)

_POLL_SECONDS = 0.1
_EOF = object()


class ExecutorError(RuntimeError):
    """Executor setup error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class _RunOutput:
    lines: list[str] = field(default_factory=list)
    stderr_chunks: list[str] = field(default_factory=list)
    final_result: str | None = None
    final_is_error: bool = False
    usage: TokenUsageReport | None = None
    cost_usd: float | None = None

    @property
    def stdout(self) -> str:
        return "".join(self.lines)

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_chunks)


class ClaudeCliExecutor:
    """Run one attempt as a `claude --print` subprocess and parse its event stream."""

    def __init__(
        self,
        *,
        command: str = DEFAULT_COMMAND,
        model: str | None = None,
        extra_args: Sequence[str] = (),
        env: dict[str, str] | None = None,
    ) -> None:
        self.command = command
        self.model = model
        self.extra_args = tuple(extra_args)
        self.env = env

    def build_args(self, request: AgentRunRequest) -> list[str]:
        command_args = shlex.split(self.command.strip())
        if not command_args:
            raise ExecutorError("Agent command is empty.", transient=False)
        args = [*command_args, *CLAUDE_ARGS]
        if self.model:
            args.extend(["--model", self.model])
        if request.system_prompt:
            args.extend(["--append-system-prompt", request.system_prompt])
        args.extend(self.extra_args)
        args.extend(["--", request.prompt])
        return args

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        args = self.build_args(request)
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        cwd = request.cwd if request.cwd is not None and request.cwd.is_dir() else None

        start = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                cwd=cwd,
            )
        except FileNotFoundError as error:
            raise ExecutorError(f"Agent command not found: {args[0]}", transient=False) from error
        except OSError as error:
            raise ExecutorError(f"Agent command failed to start: {error}", transient=True) from error

        logger.info("Started agent process pid=%s", process.pid)
        output = _RunOutput()
        lines: queue.Queue[object] = queue.Queue()
        readers = [
            threading.Thread(
                target=_pump_lines,
                args=(process.stdout, lines),
                name="agent-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=_pump_stderr,
                args=(process.stderr, output.stderr_chunks, lines),
                name="agent-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        outcome = self._supervise(process, request, output, lines, start)
        for reader in readers:
            reader.join(timeout=2)
        return outcome

    def _supervise(  # noqa: PLR0913
        self,
        process: subprocess.Popen[str],
        request: AgentRunRequest,
        output: _RunOutput,
        lines: queue.Queue[object],
        start: float,
    ) -> AgentRunResult:
        last_activity = time.monotonic()
        stdout_closed = False

        while True:
            try:
                item = lines.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                item = None

            if item is _EOF:
                stdout_closed = True
            elif isinstance(item, str):
                last_activity = time.monotonic()
                if item.startswith("\0"):
                    continue
                output.lines.append(item)
                self._handle_line(item, output, request)

            if stdout_closed and process.poll() is not None:
                return self._finish(process.returncode, output, start)

            now = time.monotonic()
            if request.cancel_requested is not None and request.cancel_requested():
                _terminate_process(process)
                logger.info("Agent process cancelled")
                return AgentRunResult(
                    success=False,
                    error="Execution cancelled",
                    duration_ms=_elapsed_ms(start),
                    cancelled=True,
                )
            if now - start >= request.timeout_seconds:
                _terminate_process(process)
                return AgentRunResult(
                    success=False,
                    error=f"Timed out after {request.timeout_seconds} seconds",
                    duration_ms=_elapsed_ms(start),
                    timed_out=True,
                )
            if now - last_activity >= request.idle_timeout_seconds:
                _terminate_process(process)
                return AgentRunResult(
                    success=False,
                    error=(
                        f"Idle timeout - no activity for {request.idle_timeout_seconds} seconds"
                    ),
                    duration_ms=_elapsed_ms(start),
                    timed_out=True,
                )

    def _handle_line(self, line: str, output: _RunOutput, request: AgentRunRequest) -> None:
        event = parse_stream_line(line)
        if event is None:
            return
        if event.kind == EVENT_RESULT:
            output.final_result = event.text
            output.final_is_error = event.is_error
            output.usage = event.usage
            output.cost_usd = event.cost_usd
        if request.on_event is not None:
            _emit(request.on_event, event)

    def _finish(self, returncode: int, output: _RunOutput, start: float) -> AgentRunResult:
        duration_ms = _elapsed_ms(start)
        usage = output.usage or extract_usage_markers(stdout=output.stdout, stderr=output.stderr)
        cost = output.cost_usd
        if cost is None and usage is not None:
            cost = estimate_cost_usd(
                model=self.model,
                input_tokens=usage.total_input_tokens,
                output_tokens=usage.output_tokens,
            )

        if (returncode == 0 or output.final_result) and not output.final_is_error:
            return AgentRunResult(
                success=True,
                response=output.final_result or output.stdout,
                duration_ms=duration_ms,
                token_usage=usage,
                cost_usd=cost,
            )
        error = output.stderr.strip() or output.final_result or f"Exit code {returncode}"
        logger.info("Agent process failed with exit code %s", returncode)
        return AgentRunResult(
            success=False,
            error=error,
            duration_ms=duration_ms,
            token_usage=usage,
            cost_usd=cost,
        )


def _emit(handler: Callable[[StreamEvent], None], event: StreamEvent) -> None:
    try:
        handler(event)
    except Exception:
        logger.exception("Stream event handler failed")


def _pump_lines(stream: IO[str] | None, sink: queue.Queue[object]) -> None:
    if stream is None:
        sink.put(_EOF)
        return
    try:
        for line in stream:
            sink.put(line)
    finally:
        sink.put(_EOF)


def _pump_stderr(
    stream: IO[str] | None,
    chunks: list[str],
    sink: queue.Queue[object],
) -> None:
    if stream is None:
        return
    for line in stream:
        chunks.append(line)
        # marker so stderr output also counts as activity
        sink.put("\0")


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
