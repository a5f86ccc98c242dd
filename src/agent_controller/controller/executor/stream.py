"""Parsing of `--output-format stream-json` lines and usage markers."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from agent_controller.controller.executor.base import TokenUsageReport

USAGE_PARSER_VERSION = "v2"

EVENT_TOOL_CALL = "tool-call"
EVENT_TEXT = "text"
EVENT_TOOL_RESULT = "tool-result"
EVENT_RESULT = "result"

_PREVIEW_CHARS = 200
_TOOL_DESCRIPTION_CHARS = 100

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\"?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(
    r"(?:output|completion)[_ ]tokens?\"?\s*[:=]\s*([\d,]+)",
    re.IGNORECASE,
)
_PROMPT_TOKENS = re.compile(r"\"?prompt_tokens\"?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


@dataclass(slots=True)
class StreamEvent:
    """One meaningful line of agent output."""

    kind: str
    text: str = ""
    tool: str | None = None
    is_error: bool = False
    usage: TokenUsageReport | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None


def parse_stream_line(line: str) -> StreamEvent | None:
    """Parse one stream-json line; non-JSON and uninteresting lines yield None."""

    stripped = line.strip()
    if not stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    if kind == "assistant":
        return _parse_assistant(payload)
    if kind == "user" and isinstance(payload.get("tool_use_result"), dict):
        result = payload["tool_use_result"]
        preview = str(result.get("stdout") or result.get("stderr") or "")[:_TOOL_DESCRIPTION_CHARS]
        return StreamEvent(
            kind=EVENT_TOOL_RESULT,
            text=preview or "(no output)",
            is_error=bool(result.get("is_error") or result.get("stderr")),
        )
    if kind == "result":
        cost = payload.get("total_cost_usd")
        duration = payload.get("duration_ms")
        return StreamEvent(
            kind=EVENT_RESULT,
            text=str(payload.get("result") or ""),
            is_error=bool(payload.get("is_error")),
            usage=_usage_from_result(payload),
            cost_usd=float(cost) if isinstance(cost, int | float) else None,
            duration_ms=int(duration) if isinstance(duration, int | float) else None,
        )
    return None


def _parse_assistant(payload: dict[str, Any]) -> StreamEvent | None:
    message = payload.get("message")
    if not isinstance(message, dict):
        return None
    for content in message.get("content") or []:
        if not isinstance(content, dict):
            continue
        if content.get("type") == "tool_use":
            tool_input = content.get("input") or {}
            description = ""
            if isinstance(tool_input, dict):
                description = str(
                    tool_input.get("description")
                    or tool_input.get("command")
                    or tool_input.get("pattern")
                    or tool_input.get("file_path")
                    or "",
                )
            if len(description) > _TOOL_DESCRIPTION_CHARS:
                description = description[:_TOOL_DESCRIPTION_CHARS] + "..."
            return StreamEvent(
                kind=EVENT_TOOL_CALL,
                tool=str(content.get("name") or "unknown"),
                text=description,
            )
        if content.get("type") == "text" and content.get("text"):
            return StreamEvent(kind=EVENT_TEXT, text=str(content["text"])[:_PREVIEW_CHARS])
    return None


def _usage_from_result(payload: dict[str, Any]) -> TokenUsageReport | None:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    context_window: int | None = None
    model_usage = payload.get("modelUsage")
    if isinstance(model_usage, dict):
        windows = [
            int(item["contextWindow"])
            for item in model_usage.values()
            if isinstance(item, dict) and isinstance(item.get("contextWindow"), int)
        ]
        context_window = max(windows) if windows else None
    return TokenUsageReport(
        input_tokens=_as_int(usage.get("input_tokens")),
        output_tokens=_as_int(usage.get("output_tokens")),
        cache_read_input_tokens=_as_int(usage.get("cache_read_input_tokens")),
        cache_creation_input_tokens=_as_int(usage.get("cache_creation_input_tokens")),
        context_window=context_window,
    )


def extract_usage_markers(*, stdout: str, stderr: str) -> TokenUsageReport | None:
    """Best-effort usage from textual markers when no result event carried usage."""

    prompt: int | None = None
    completion: int | None = None
    for text in (stderr, stdout):
        if prompt is None:
            prompt = _extract_int(_INPUT_TOKENS, text)
            if prompt is None:
                prompt = _extract_int(_PROMPT_TOKENS, text)
        if completion is None:
            completion = _extract_int(_OUTPUT_TOKENS, text)
    if prompt is None and completion is None:
        return None
    return TokenUsageReport(input_tokens=prompt or 0, output_tokens=completion or 0)


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int | float):
        return int(value)
    return 0


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
