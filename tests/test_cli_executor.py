from __future__ import annotations

import json

import allure
import pytest

from agent_controller.controller.executor import (
    AgentRunRequest,
    ClaudeCliExecutor,
    ExecutorError,
)
from agent_controller.controller.executor.stream import (
    EVENT_RESULT,
    EVENT_TEXT,
    EVENT_TOOL_CALL,
    EVENT_TOOL_RESULT,
    StreamEvent,
    extract_usage_markers,
    parse_stream_line,
)
from conftest import ECHO_AGENT_COMMAND

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("CLI Executor"),
]


def test_build_args_uses_stream_json_mode_and_prompt_separator() -> None:
    executor = ClaudeCliExecutor(command="claude", model="sonnet", extra_args=("--max-turns", "5"))

    args = executor.build_args(
        AgentRunRequest(prompt="-- do the thing", system_prompt="Be terse."),
    )

    assert args == [
        "claude",
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
        "--model",
        "sonnet",
        "--append-system-prompt",
        "Be terse.",
        "--max-turns",
        "5",
        "--",
        "-- do the thing",
    ]


def test_build_args_rejects_empty_command() -> None:
    with pytest.raises(ExecutorError, match="empty"):
        ClaudeCliExecutor(command="   ").build_args(AgentRunRequest(prompt="hi"))


def test_echo_agent_run_streams_events_and_reports_usage() -> None:
    events: list[StreamEvent] = []
    executor = ClaudeCliExecutor(command=ECHO_AGENT_COMMAND)

    result = executor.run(
        AgentRunRequest(
            prompt="Summarize the release notes",
            system_prompt="You are a careful engineer.",
            timeout_seconds=60,
            idle_timeout_seconds=30,
            on_event=events.append,
        ),
    )

    assert result.success is True
    assert result.response == "Summarize the release notes"
    assert result.cost_usd == 0.0
    assert result.token_usage is not None
    assert result.token_usage.input_tokens == 4
    assert result.token_usage.output_tokens == 4
    assert result.token_usage.context_window == 200_000
    assert [event.kind for event in events] == [
        EVENT_TOOL_CALL,
        EVENT_TOOL_RESULT,
        EVENT_TEXT,
        EVENT_RESULT,
    ]
    assert events[0].tool == "Bash"
    assert events[0].text == "Echo task prompt"


def test_nonzero_exit_reports_stderr(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_CONTROLLER_ECHO_EXIT_CODE", "3")
    executor = ClaudeCliExecutor(command=ECHO_AGENT_COMMAND)

    result = executor.run(AgentRunRequest(prompt="Break please", timeout_seconds=60))

    assert result.success is False
    assert result.cancelled is False
    assert result.error == "echo agent failure for: Break please"


def test_idle_agent_is_terminated(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_CONTROLLER_ECHO_SLEEP", "5")
    executor = ClaudeCliExecutor(command=ECHO_AGENT_COMMAND)

    result = executor.run(
        AgentRunRequest(prompt="Wait", timeout_seconds=60, idle_timeout_seconds=1),
    )

    assert result.success is False
    assert result.timed_out is True
    assert result.error == "Idle timeout - no activity for 1 seconds"


def test_cancel_flag_stops_running_agent(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_CONTROLLER_ECHO_SLEEP", "5")
    executor = ClaudeCliExecutor(command=ECHO_AGENT_COMMAND)

    result = executor.run(
        AgentRunRequest(prompt="Wait", timeout_seconds=60, cancel_requested=lambda: True),
    )

    assert result.cancelled is True
    assert result.error == "Execution cancelled"


def test_missing_binary_is_a_permanent_executor_error(tmp_path) -> None:
    executor = ClaudeCliExecutor(command=str(tmp_path / "no-such-agent"))

    with pytest.raises(ExecutorError) as raised:
        executor.run(AgentRunRequest(prompt="hi"))

    assert raised.value.transient is False
    assert "Agent command not found" in str(raised.value)


def test_parse_stream_line_handles_each_event_kind() -> None:
    tool = parse_stream_line(
        json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "Read", "input": {"file_path": "a.py"}},
                    ],
                },
            },
        ),
    )
    text = parse_stream_line(
        json.dumps(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "x" * 300}]}},
        ),
    )
    tool_result = parse_stream_line(
        json.dumps({"type": "user", "tool_use_result": {"stdout": "", "stderr": "denied"}}),
    )
    result = parse_stream_line(
        json.dumps(
            {
                "type": "result",
                "result": "All done",
                "is_error": False,
                "total_cost_usd": 0.12,
                "duration_ms": 900,
                "usage": {
                    "input_tokens": 10,
                    "output_tokens": 20,
                    "cache_read_input_tokens": 5,
                },
                "modelUsage": {
                    "small": {"contextWindow": 100_000},
                    "large": {"contextWindow": 200_000},
                },
            },
        ),
    )

    assert tool == StreamEvent(kind=EVENT_TOOL_CALL, tool="Read", text="a.py")
    assert text is not None
    assert len(text.text) == 200
    assert tool_result is not None
    assert tool_result.is_error is True
    assert tool_result.text == "denied"
    assert result is not None
    assert result.text == "All done"
    assert result.cost_usd == 0.12
    assert result.duration_ms == 900
    assert result.usage is not None
    assert result.usage.total_input_tokens == 15
    assert result.usage.context_window == 200_000


@pytest.mark.parametrize(
    "line",
    ["", "plain text output", "[1, 2]", '{"type": "system", "subtype": "init"}'],
)
def test_parse_stream_line_ignores_uninteresting_lines(line) -> None:
    assert parse_stream_line(line) is None


def test_extract_usage_markers_prefers_stderr_then_stdout() -> None:
    usage = extract_usage_markers(
        stdout='{"completion_tokens": 7}',
        stderr="input_tokens=1,234",
    )

    assert usage is not None
    assert usage.input_tokens == 1234
    assert usage.output_tokens == 7
    assert extract_usage_markers(stdout="nothing here", stderr="") is None
